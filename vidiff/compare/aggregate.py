from __future__ import annotations

from collections.abc import Iterable

from vidiff.errors import NoUsableFrames
from vidiff.models import FrameDetections, LabelSet


def aggregate_detections(
    frames: Iterable[FrameDetections],
    persistence_threshold: float = 0.2,
    *,
    source: str = "video",
) -> LabelSet:
    """Collapse per-frame detections of one video into its canonical LabelSet.

    A label is kept when the share of usable frames it appears in is strictly
    above `persistence_threshold`; its score is the mean confidence over those
    frames. Dropped frames do not count towards the denominator.
    """

    if not 0.0 <= persistence_threshold < 1.0:
        raise ValueError("persistence_threshold must be within [0, 1).")

    # detection may complete out of order
    ordered = sorted(frames, key=lambda item: (item.timestamp_seconds, item.frame_index))
    usable = [item for item in ordered if item.usable]
    if not usable:
        raise NoUsableFrames(
            f"No usable frames in {source}: {len(ordered)} sampled, all failed detection."
            if ordered
            else f"No frames could be sampled from {source}."
        )

    confidences: dict[str, list[float]] = {}
    for item in usable:
        seen_in_frame: dict[str, float] = {}
        for detection in item.detections:
            if detection.confidence > seen_in_frame.get(detection.label, -1.0):
                seen_in_frame[detection.label] = detection.confidence
        for label, confidence in seen_in_frame.items():
            confidences.setdefault(label, []).append(confidence)

    frame_count = len(usable)
    scores: dict[str, float] = {}
    presence: dict[str, float] = {}
    for label in sorted(confidences):
        values = confidences[label]
        ratio = len(values) / frame_count
        if ratio <= persistence_threshold:
            continue
        scores[label] = sum(values) / len(values)
        presence[label] = ratio

    return LabelSet(scores=scores, presence=presence, frame_count=frame_count)
