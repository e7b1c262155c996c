from __future__ import annotations

import logging
import math
from collections.abc import Iterable

from vidiff.config import DetectionSettings
from vidiff.errors import DetectionFailure, TransientDetectionError
from vidiff.labels import normalize_label
from vidiff.models import Detection, Frame

logger = logging.getLogger(__name__)


class ObjectDetector:
    """Per-frame detection capability. Implementations must tolerate concurrent calls."""

    name = "detector"

    def load(self) -> None:
        """Warm up the backend (load weights). Optional."""

    def detect(self, frame: Frame) -> Iterable[Detection]:
        raise NotImplementedError


class DetectorAdapter:
    """Apply label normalization, confidence cutoff and retry policy around a backend."""

    def __init__(
        self,
        detector: ObjectDetector,
        *,
        min_confidence: float = 0.5,
        max_retries: int = 1,
    ) -> None:
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError("min_confidence must be within [0, 1].")
        self.detector = detector
        self.min_confidence = min_confidence
        self.max_retries = max(0, max_retries)

    @classmethod
    def from_settings(cls, detector: ObjectDetector, settings: DetectionSettings) -> DetectorAdapter:
        return cls(detector, min_confidence=settings.min_confidence, max_retries=settings.max_retries)

    def ensure_ready(self) -> None:
        try:
            self.detector.load()
        except DetectionFailure:
            raise
        except Exception as exc:
            raise DetectionFailure(f"Object detector '{self.detector.name}' is unavailable: {exc}") from exc

    def detect(self, frame: Frame) -> tuple[Detection, ...]:
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            try:
                raw_detections = list(self.detector.detect(frame))
            except TransientDetectionError as exc:
                last_error = exc
                logger.debug("Transient detection error on frame %s (attempt %s): %s", frame.index, attempt + 1, exc)
                continue
            except DetectionFailure:
                raise
            except Exception as exc:
                raise DetectionFailure(f"Detection failed on frame {frame.index}: {exc}") from exc
            return self._filter(raw_detections, frame)

        raise DetectionFailure(
            f"Detection failed on frame {frame.index} after {self.max_retries + 1} attempts: {last_error}"
        ) from last_error

    def _filter(self, raw_detections: list[Detection], frame: Frame) -> tuple[Detection, ...]:
        best: dict[str, float] = {}
        for detection in raw_detections:
            confidence = float(detection.confidence)
            if not math.isfinite(confidence) or not 0.0 <= confidence <= 1.0:
                raise DetectionFailure(
                    f"Detector returned confidence {detection.confidence!r} outside [0, 1] on frame {frame.index}."
                )
            if confidence < self.min_confidence:
                continue

            try:
                label = normalize_label(detection.label)
            except ValueError as exc:
                raise DetectionFailure(f"Detector returned an unusable label on frame {frame.index}: {exc}") from exc

            # several instances of one class in a frame count once, at their best confidence
            if confidence > best.get(label, -1.0):
                best[label] = confidence

        return tuple(Detection(label=label, confidence=best[label]) for label in sorted(best))


def build_detector(settings: DetectionSettings) -> ObjectDetector:
    """Instantiate the configured detection backend."""

    backend = settings.backend.lower().strip()
    if backend in {"ultralytics", "yolo"}:
        from vidiff.detect.ultralytics_backend import UltralyticsDetector

        return UltralyticsDetector(
            model=settings.model,
            device=settings.device,
            image_size=settings.image_size,
            inference_confidence=settings.min_confidence,
        )

    msg = (
        f"Unsupported detector backend '{settings.backend}'. "
        "Expected one of: ultralytics."
    )
    raise ValueError(msg)
