from __future__ import annotations

from collections.abc import Mapping

from vidiff.labels import is_normalized
from vidiff.models import ComparisonResult, LabelSet


def diff_label_sets(
    video1: LabelSet | Mapping[str, float],
    video2: LabelSet | Mapping[str, float],
) -> ComparisonResult:
    """Labels present only in video2 (added) and only in video1 (removed), sorted."""

    labels1 = _label_keys(video1, "video1")
    labels2 = _label_keys(video2, "video2")

    return ComparisonResult(
        added=tuple(sorted(labels2 - labels1)),
        removed=tuple(sorted(labels1 - labels2)),
        video1_labels=video1 if isinstance(video1, LabelSet) else None,
        video2_labels=video2 if isinstance(video2, LabelSet) else None,
    )


def _label_keys(label_set: LabelSet | Mapping[str, float], name: str) -> frozenset[str]:
    labels = label_set.labels() if isinstance(label_set, LabelSet) else frozenset(label_set)
    invalid = sorted(repr(label) for label in labels if not isinstance(label, str) or not is_normalized(label))
    if invalid:
        raise ValueError(f"{name} contains labels that are not normalized: {', '.join(invalid)}")
    return labels
