from __future__ import annotations

import logging
import threading
from typing import Any

import numpy as np

from vidiff.detect.detector import ObjectDetector
from vidiff.errors import DetectionFailure, TransientDetectionError
from vidiff.models import Detection, Frame

logger = logging.getLogger(__name__)


class UltralyticsDetector(ObjectDetector):
    """YOLO detection through ultralytics.

    ultralytics models are not safe to share between threads, so every worker
    thread lazily loads its own instance of the same weights.
    """

    name = "ultralytics"

    def __init__(
        self,
        model: str = "yolov8n.pt",
        device: str = "auto",
        image_size: int = 640,
        inference_confidence: float = 0.25,
    ) -> None:
        self.model = model
        self.device = device
        self.image_size = image_size
        self.inference_confidence = inference_confidence
        self._local = threading.local()

    def load(self) -> None:
        self._model_for_thread()

    def detect(self, frame: Frame) -> list[Detection]:
        image = _validated_image(frame)

        model = self._model_for_thread()
        try:
            results = model.predict(
                image,
                imgsz=self.image_size,
                conf=self.inference_confidence,
                device=_resolve_device(self.device),
                verbose=False,
            )
        except RuntimeError as exc:
            raise TransientDetectionError(f"YOLO inference failed on frame {frame.index}: {exc}") from exc

        return _parse_results(results)

    def _model_for_thread(self) -> Any:
        model = getattr(self._local, "model", None)
        if model is None:
            from ultralytics import YOLO

            logger.info("Loading YOLO weights %s in %s", self.model, threading.current_thread().name)
            model = YOLO(self.model)
            self._local.model = model
        return model


def _resolve_device(device: str) -> str | None:
    normalized = device.strip().lower()
    if normalized in {"", "auto"}:
        return None
    return normalized


def _parse_results(results: Any) -> list[Detection]:
    detections: list[Detection] = []
    for result in results:
        names = result.names
        for box in result.boxes:
            class_id = int(box.cls[0])
            confidence = float(box.conf[0])
            label = names.get(class_id, str(class_id)) if isinstance(names, dict) else names[class_id]
            detections.append(Detection(label=str(label), confidence=confidence))
    return detections


def _validated_image(frame: Frame) -> np.ndarray:
    image = frame.image
    if not isinstance(image, np.ndarray):
        raise DetectionFailure(f"Malformed frame {frame.index}: expected a numpy image, got {type(image).__name__}.")
    if image.ndim != 3 or image.shape[2] != 3 or image.size == 0:
        raise DetectionFailure(f"Malformed frame {frame.index}: expected an HxWx3 image, got shape {image.shape}.")
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    return image
