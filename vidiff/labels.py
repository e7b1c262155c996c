from __future__ import annotations

import re

_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_label(raw_label: str) -> str:
    """Return the canonical form of a detector class name.

    Labels are compared by exact string equality after normalization, so
    "Traffic_Light", " traffic-light " and "traffic light" are the same label.
    """

    if not isinstance(raw_label, str):
        raise ValueError(f"Label must be a string, got {type(raw_label).__name__}.")

    normalized = _SEPARATORS.sub(" ", raw_label.casefold()).strip()
    if not normalized:
        raise ValueError(f"Label {raw_label!r} is empty after normalization.")
    return normalized


def is_normalized(label: str) -> bool:
    try:
        return normalize_label(label) == label
    except ValueError:
        return False
