from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any

from vidiff.models import ComparisonResult, LabelSet


def export_comparison(result: ComparisonResult, output_path: str | Path) -> Path:
    """Export a comparison to JSON (default) or CSV, based on file extension."""

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() == ".csv":
        _write_csv(result, path)
    else:
        path.write_text(json.dumps(comparison_payload(result), indent=2, sort_keys=True), encoding="utf-8")

    return path


def comparison_payload(result: ComparisonResult) -> dict[str, Any]:
    """Response contract plus per-video label scores when they are known."""

    payload: dict[str, Any] = result.to_response()
    if result.video1_labels is not None:
        payload["video1"] = result.video1_labels.to_dict()
    if result.video2_labels is not None:
        payload["video2"] = result.video2_labels.to_dict()
    return payload


def load_comparison(path: str | Path) -> ComparisonResult:
    """Load a comparison exported as JSON."""

    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Comparison report must be a JSON object.")

    try:
        added = tuple(str(label) for label in payload["added_in_video2"])
        removed = tuple(str(label) for label in payload["removed_in_video2"])
    except KeyError as exc:
        raise ValueError(f"Comparison report is missing {exc.args[0]!r}.") from exc

    return ComparisonResult(
        added=added,
        removed=removed,
        video1_labels=_label_set_from_dict(payload.get("video1")),
        video2_labels=_label_set_from_dict(payload.get("video2")),
    )


def _label_set_from_dict(raw: Any) -> LabelSet | None:
    if not isinstance(raw, dict):
        return None
    labels = raw.get("labels", {})
    return LabelSet(
        scores={label: float(entry["confidence"]) for label, entry in labels.items()},
        presence={label: float(entry.get("presence", 0.0)) for label, entry in labels.items()},
        frame_count=int(raw.get("frame_count", 0)),
    )


def _write_csv(result: ComparisonResult, path: Path) -> None:
    fields = ["label", "change", "confidence", "presence"]

    rows: list[dict[str, str]] = []
    for label in result.added:
        rows.append(_csv_row(label, "added", result.video2_labels))
    for label in result.removed:
        rows.append(_csv_row(label, "removed", result.video1_labels))

    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fields)
        writer.writeheader()
        writer.writerows(rows)


def _csv_row(label: str, change: str, label_set: LabelSet | None) -> dict[str, str]:
    confidence = label_set.scores.get(label) if label_set is not None else None
    presence = label_set.presence.get(label) if label_set is not None else None
    return {
        "label": label,
        "change": change,
        "confidence": f"{confidence:.4f}" if confidence is not None else "",
        "presence": f"{presence:.4f}" if presence is not None else "",
    }
