from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

from vidiff.config import SamplingSettings
from vidiff.errors import UnsupportedFormat
from vidiff.models import Frame

logger = logging.getLogger(__name__)

_CAP_PROP_POS_FRAMES = 1  # cv2.CAP_PROP_POS_FRAMES
_CAP_PROP_FPS = 5  # cv2.CAP_PROP_FPS
_CAP_PROP_FRAME_COUNT = 7  # cv2.CAP_PROP_FRAME_COUNT

# how far to scan for a first decodable frame when every planned position failed
FIRST_FRAME_SCAN_LIMIT = 300

CaptureFactory = Callable[[str], Any]


def plan_timestamps(duration_seconds: float, interval_seconds: float, max_frames: int) -> list[float]:
    """Return evenly spaced sample timestamps for a video of the given duration."""

    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive.")
    if max_frames < 1:
        raise ValueError("max_frames must be at least 1.")

    if duration_seconds <= 0 or duration_seconds < interval_seconds:
        return [0.0]

    count = int(math.floor(duration_seconds / interval_seconds)) + 1
    step = interval_seconds
    if count > max_frames:
        count = max_frames
        step = duration_seconds / max_frames

    return [round(index * step, 6) for index in range(count)]


class FrameSampler:
    """Extract a bounded, deterministic sequence of frames from a video file.

    Every call to `sample` opens a fresh capture, so sampling the same file
    twice with the same configuration visits the same timestamps.
    """

    def __init__(
        self,
        interval_seconds: float = 1.0,
        max_frames: int = 32,
        capture_factory: CaptureFactory | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive.")
        if max_frames < 1:
            raise ValueError("max_frames must be at least 1.")
        self.interval_seconds = interval_seconds
        self.max_frames = max_frames
        self._capture_factory = capture_factory

    @classmethod
    def from_settings(cls, settings: SamplingSettings) -> FrameSampler:
        return cls(interval_seconds=settings.interval_seconds, max_frames=settings.max_frames)

    def plan(self, video_path: str | Path) -> list[float]:
        """Timestamps `sample` would visit for this file."""

        capture = self._open(video_path)
        try:
            fps, frame_count = _stream_info(capture, video_path)
        finally:
            capture.release()
        duration_seconds = frame_count / fps if frame_count > 0 else 0.0
        return plan_timestamps(duration_seconds, self.interval_seconds, self.max_frames)

    def sample(
        self,
        video_path: str | Path,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[Frame]:
        capture = self._open(video_path)
        try:
            fps, frame_count = _stream_info(capture, video_path)
            if frame_count > 0:
                yield from self._sample_by_seeking(capture, video_path, fps, frame_count, cancel_event)
            else:
                yield from self._sample_sequentially(capture, video_path, fps, cancel_event)
        finally:
            capture.release()

    def _open(self, video_path: str | Path) -> Any:
        source_path = Path(video_path)
        if not source_path.exists():
            raise FileNotFoundError(f"Video file not found: {source_path}")

        factory = self._capture_factory
        if factory is None:
            import cv2

            factory = cv2.VideoCapture

        capture = factory(str(source_path))
        if not capture.isOpened():
            capture.release()
            raise UnsupportedFormat(f"Unable to decode video container or codec: {source_path.name}")
        return capture

    def _sample_by_seeking(
        self,
        capture: Any,
        video_path: str | Path,
        fps: float,
        frame_count: int,
        cancel_event: threading.Event | None,
    ) -> Iterator[Frame]:
        timestamps = plan_timestamps(frame_count / fps, self.interval_seconds, self.max_frames)
        last_index = -1
        yielded = 0

        for timestamp in timestamps:
            if cancel_event is not None and cancel_event.is_set():
                return

            frame_index = min(int(round(timestamp * fps)), frame_count - 1)
            if frame_index <= last_index:
                continue

            capture.set(_CAP_PROP_POS_FRAMES, frame_index)
            ok, image = capture.read()
            if not ok or image is None:
                logger.debug("Frame %s of %s did not decode; skipping", frame_index, Path(video_path).name)
                continue

            last_index = frame_index
            yielded += 1
            yield Frame(index=frame_index, timestamp_seconds=round(frame_index / fps, 3), image=image)

        if yielded == 0:
            capture.set(_CAP_PROP_POS_FRAMES, 0)
            yield self._first_decodable_frame(capture, video_path, fps)

    def _sample_sequentially(
        self,
        capture: Any,
        video_path: str | Path,
        fps: float,
        cancel_event: threading.Event | None,
    ) -> Iterator[Frame]:
        # frame count unknown: walk the stream and keep the first frame at or after each interval mark
        next_timestamp = 0.0
        frame_index = 0
        yielded = 0

        while yielded < self.max_frames:
            if cancel_event is not None and cancel_event.is_set():
                return

            ok, image = capture.read()
            if not ok:
                break

            timestamp_seconds = frame_index / fps
            if timestamp_seconds + 1e-9 >= next_timestamp and image is not None:
                yielded += 1
                next_timestamp += self.interval_seconds
                yield Frame(index=frame_index, timestamp_seconds=round(timestamp_seconds, 3), image=image)
            frame_index += 1

        if yielded == 0:
            raise UnsupportedFormat(f"No decodable frames in video: {Path(video_path).name}")

    def _first_decodable_frame(self, capture: Any, video_path: str | Path, fps: float) -> Frame:
        for frame_index in range(FIRST_FRAME_SCAN_LIMIT):
            ok, image = capture.read()
            if ok and image is not None:
                return Frame(index=frame_index, timestamp_seconds=round(frame_index / fps, 3), image=image)

        raise UnsupportedFormat(f"No decodable frames in video: {Path(video_path).name}")


def _stream_info(capture: Any, video_path: str | Path) -> tuple[float, int]:
    fps = float(capture.get(_CAP_PROP_FPS) or 0.0)
    if not math.isfinite(fps) or fps <= 0:
        raise UnsupportedFormat(f"Video stream reports no frame rate: {Path(video_path).name}")

    raw_count = float(capture.get(_CAP_PROP_FRAME_COUNT) or 0.0)
    frame_count = int(raw_count) if math.isfinite(raw_count) and raw_count > 0 else 0
    return fps, frame_count
