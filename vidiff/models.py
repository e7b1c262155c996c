from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, BinaryIO


@dataclass(slots=True)
class VideoUpload:
    """One uploaded video as received from the caller."""

    field_name: str
    filename: str
    media_type: str
    stream: BinaryIO
    size: int | None = None


@dataclass(slots=True)
class StoredVideo:
    """An upload spooled into the request workspace."""

    field_name: str
    filename: str
    media_type: str
    path: Path
    size_bytes: int


@dataclass(slots=True)
class Frame:
    """A decoded image sampled from a video."""

    index: int
    timestamp_seconds: float
    image: Any


@dataclass(frozen=True, slots=True)
class Detection:
    label: str
    confidence: float


@dataclass(frozen=True, slots=True)
class FrameDetections:
    """Detector outcome for one sampled frame; `error` marks a dropped frame."""

    frame_index: int
    timestamp_seconds: float
    detections: tuple[Detection, ...] = ()
    error: str | None = None

    @property
    def usable(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class LabelSet:
    """Canonical labels of one video with their aggregate confidence."""

    scores: Mapping[str, float] = field(default_factory=dict)
    presence: Mapping[str, float] = field(default_factory=dict)
    frame_count: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "scores", MappingProxyType(dict(sorted(self.scores.items()))))
        object.__setattr__(self, "presence", MappingProxyType(dict(sorted(self.presence.items()))))

    def __contains__(self, label: object) -> bool:
        return label in self.scores

    def __len__(self) -> int:
        return len(self.scores)

    def labels(self) -> frozenset[str]:
        return frozenset(self.scores)

    def to_dict(self) -> dict[str, Any]:
        return {
            "frame_count": self.frame_count,
            "labels": {
                label: {"confidence": round(score, 6), "presence": round(self.presence.get(label, 0.0), 6)}
                for label, score in self.scores.items()
            },
        }


@dataclass(frozen=True, slots=True)
class ComparisonResult:
    """Labels added in and removed from video2 relative to video1."""

    added: tuple[str, ...]
    removed: tuple[str, ...]
    video1_labels: LabelSet | None = None
    video2_labels: LabelSet | None = None

    def to_response(self) -> dict[str, list[str]]:
        return {
            "added_in_video2": list(self.added),
            "removed_in_video2": list(self.removed),
        }


class RequestState(str, Enum):
    RECEIVED = "Received"
    VALIDATING = "Validating"
    SAMPLING = "Sampling"
    DETECTING = "Detecting"
    AGGREGATING = "Aggregating"
    DIFFING = "Diffing"
    COMPLETED = "Completed"
    FAILED = "Failed"


_STATE_ORDER = [
    RequestState.RECEIVED,
    RequestState.VALIDATING,
    RequestState.SAMPLING,
    RequestState.DETECTING,
    RequestState.AGGREGATING,
    RequestState.DIFFING,
    RequestState.COMPLETED,
]

TransitionCallback = Callable[["ComparisonJob", RequestState], None]


@dataclass(slots=True)
class ComparisonJob:
    """State of one comparison request.

    States only move forward. Both per-video pipelines report progress into
    the same job, so it reflects the furthest stage either of them reached.
    `Failed` is terminal and reachable from every non-terminal state.
    """

    on_transition: TransitionCallback | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: RequestState = RequestState.RECEIVED
    history: list[RequestState] = field(default_factory=lambda: [RequestState.RECEIVED])
    failure_code: str | None = None
    failure_message: str | None = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def finished(self) -> bool:
        return self.state in (RequestState.COMPLETED, RequestState.FAILED)

    def advance(self, state: RequestState) -> bool:
        if state is RequestState.FAILED:
            raise ValueError("Use fail() to enter the Failed state.")
        if self.finished:
            return False
        if _STATE_ORDER.index(state) <= _STATE_ORDER.index(self.state):
            return False
        self._enter(state)
        return True

    def fail(self, code: str, message: str) -> None:
        if self.finished:
            return
        self.failure_code = code
        self.failure_message = message
        self._enter(RequestState.FAILED)

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at

    def _enter(self, state: RequestState) -> None:
        self.state = state
        self.history.append(state)
        if self.on_transition is not None:
            self.on_transition(self, state)
