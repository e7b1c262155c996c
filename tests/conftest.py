from __future__ import annotations

import io
import threading
import time
from collections.abc import Iterator
from pathlib import Path

import pytest

from vidiff.config import Settings
from vidiff.detect.detector import DetectorAdapter, ObjectDetector
from vidiff.models import Detection, Frame, VideoUpload
from vidiff.service.orchestrator import ComparisonOrchestrator


class ScriptedSampler:
    """Yields one frame per scene name listed for the stored file's content."""

    def __init__(self, scenes_by_content: dict[bytes, list[str]]) -> None:
        self.scenes_by_content = scenes_by_content
        self.calls: list[Path] = []

    def sample(self, video_path: Path, cancel_event: threading.Event | None = None) -> Iterator[Frame]:
        self.calls.append(Path(video_path))
        content = Path(video_path).read_bytes()
        for index, scene in enumerate(self.scenes_by_content[content]):
            if cancel_event is not None and cancel_event.is_set():
                return
            yield Frame(index=index, timestamp_seconds=float(index), image=scene)


class ScriptedDetector(ObjectDetector):
    """Maps a frame's scene name to detections, or to an exception to raise."""

    name = "scripted"

    def __init__(self, outputs: dict[str, list[Detection] | Exception], delay_seconds: float = 0.0) -> None:
        self.outputs = outputs
        self.delay_seconds = delay_seconds
        self.calls = 0
        self._lock = threading.Lock()

    def detect(self, frame: Frame) -> list[Detection]:
        with self._lock:
            self.calls += 1
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        output = self.outputs[frame.image]
        if isinstance(output, Exception):
            raise output
        return output


SCENES = {
    b"street-before": ["dog+car"] * 5,
    b"street-after": ["dog+bicycle"] * 5,
}

DETECTIONS: dict[str, list[Detection] | Exception] = {
    "dog+car": [Detection("Dog", 0.9), Detection("car", 0.6)],
    "dog+bicycle": [Detection("dog", 0.9), Detection("Bicycle", 0.7)],
}


def make_upload(field_name: str, content: bytes, media_type: str = "video/mp4", size: int | None = None) -> VideoUpload:
    return VideoUpload(
        field_name=field_name,
        filename=f"{field_name}.mp4",
        media_type=media_type,
        stream=io.BytesIO(content),
        size=len(content) if size is None else size,
    )


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def settings(workspace_root: Path) -> Settings:
    return Settings.model_validate(
        {
            "detection": {"workers": 2, "min_confidence": 0.5},
            "limits": {
                "temp_dir": str(workspace_root),
                "max_payload_bytes": 1024,
                "request_timeout_seconds": 5.0,
            },
        }
    )


@pytest.fixture
def make_orchestrator(settings: Settings):
    created: list[ComparisonOrchestrator] = []

    def _make(
        detector: ObjectDetector | None = None,
        sampler: ScriptedSampler | None = None,
        config: Settings | None = None,
    ) -> ComparisonOrchestrator:
        resolved = config or settings
        adapter = DetectorAdapter.from_settings(detector or ScriptedDetector(DETECTIONS), resolved.detection)
        orchestrator = ComparisonOrchestrator(resolved, adapter, sampler=sampler or ScriptedSampler(SCENES))
        created.append(orchestrator)
        return orchestrator

    yield _make

    for orchestrator in created:
        orchestrator.close()
