from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest

from conftest import DETECTIONS, SCENES, ScriptedDetector, ScriptedSampler, make_upload
from vidiff.detect.detector import ObjectDetector
from vidiff.errors import (
    DetectionFailure,
    InternalError,
    NoUsableFrames,
    PayloadTooLarge,
    RequestTimeout,
    ResourceExhaustion,
    TransientDetectionError,
    UnsupportedFormat,
)
from vidiff.models import ComparisonJob, Detection, Frame, RequestState


def _compare(orchestrator, before: bytes, after: bytes, job: ComparisonJob | None = None, **upload_kwargs):
    return asyncio.run(
        orchestrator.compare(
            make_upload("video1", before, **upload_kwargs),
            make_upload("video2", after, **upload_kwargs),
            job=job,
        )
    )


def _leftover_files(root: Path) -> list[Path]:
    if not root.exists():
        return []
    return list(root.rglob("*"))


def test_compare_reports_added_and_removed_labels(make_orchestrator, workspace_root: Path) -> None:
    orchestrator = make_orchestrator()
    job = ComparisonJob()

    result = _compare(orchestrator, b"street-before", b"street-after", job=job)

    assert result.to_response() == {"added_in_video2": ["bicycle"], "removed_in_video2": ["car"]}
    assert result.video1_labels is not None
    assert result.video1_labels.scores["dog"] == pytest.approx(0.9)
    assert job.history == [
        RequestState.RECEIVED,
        RequestState.VALIDATING,
        RequestState.SAMPLING,
        RequestState.DETECTING,
        RequestState.AGGREGATING,
        RequestState.DIFFING,
        RequestState.COMPLETED,
    ]
    assert _leftover_files(workspace_root) == []


def test_identical_videos_produce_empty_diff(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    result = _compare(orchestrator, b"street-before", b"street-before")

    assert result.to_response() == {"added_in_video2": [], "removed_in_video2": []}


def test_oversized_declared_payload_is_rejected_before_decoding(make_orchestrator, workspace_root: Path) -> None:
    sampler = ScriptedSampler(SCENES)
    orchestrator = make_orchestrator(sampler=sampler)
    job = ComparisonJob()

    with pytest.raises(PayloadTooLarge):
        _compare(orchestrator, b"street-before", b"street-after", job=job, size=10_000)

    assert sampler.calls == []
    assert job.state is RequestState.FAILED
    assert job.failure_code == "PayloadTooLarge"
    assert _leftover_files(workspace_root) == []


def test_oversized_stream_without_declared_size_is_rejected_while_storing(make_orchestrator, workspace_root: Path) -> None:
    sampler = ScriptedSampler({b"x" * 2048: ["dog+car"]})
    orchestrator = make_orchestrator(sampler=sampler)

    with pytest.raises(PayloadTooLarge):
        asyncio.run(
            orchestrator.compare(
                make_upload("video1", b"street-before"),
                make_upload("video2", b"x" * 2048, size=0),
            )
        )

    assert sampler.calls == []
    assert _leftover_files(workspace_root) == []


def test_non_video_media_type_is_unsupported(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    with pytest.raises(UnsupportedFormat, match="unsupported media type"):
        _compare(orchestrator, b"street-before", b"street-after", media_type="image/png")


def test_allowed_media_types_restrict_video_subtypes(make_orchestrator, settings) -> None:
    config = settings.model_copy(deep=True)
    config.limits.allowed_media_types = ["video/mp4"]
    orchestrator = make_orchestrator(config=config)

    with pytest.raises(UnsupportedFormat):
        _compare(orchestrator, b"street-before", b"street-after", media_type="video/x-msvideo")

    result = _compare(orchestrator, b"street-before", b"street-after", media_type="video/mp4; codecs=avc1")
    assert result.added == ("bicycle",)


def test_video_with_no_usable_frames_fails_the_request(make_orchestrator) -> None:
    detector = ScriptedDetector(
        {
            **DETECTIONS,
            "corrupt": DetectionFailure("malformed frame"),
        }
    )
    sampler = ScriptedSampler({**SCENES, b"broken": ["corrupt"] * 3})
    orchestrator = make_orchestrator(detector=detector, sampler=sampler)
    job = ComparisonJob()

    with pytest.raises(NoUsableFrames, match="video2"):
        _compare(orchestrator, b"street-before", b"broken", job=job)

    assert job.failure_code == "NoUsableFrames"


def test_single_failed_frames_are_dropped_not_fatal(make_orchestrator) -> None:
    detector = ScriptedDetector({**DETECTIONS, "corrupt": ValueError("bad tensor")})
    sampler = ScriptedSampler(
        {
            b"street-before": ["dog+car", "corrupt", "dog+car", "dog+car"],
            b"street-after": ["dog+bicycle", "dog+bicycle", "corrupt"],
        }
    )
    orchestrator = make_orchestrator(detector=detector, sampler=sampler)

    result = _compare(orchestrator, b"street-before", b"street-after")

    assert result.added == ("bicycle",)
    assert result.removed == ("car",)
    assert result.video1_labels is not None
    assert result.video1_labels.frame_count == 3


def test_transient_errors_are_retried_once(make_orchestrator) -> None:
    class _FlakyOnce(ScriptedDetector):
        def __init__(self) -> None:
            super().__init__(DETECTIONS)
            self.failed: set[tuple[int, str]] = set()

        def detect(self, frame):
            key = (frame.index, frame.image)
            if key not in self.failed:
                self.failed.add(key)
                raise TransientDetectionError("accelerator busy")
            return super().detect(frame)

    detector = _FlakyOnce()
    orchestrator = make_orchestrator(detector=detector)

    result = _compare(orchestrator, b"street-before", b"street-after")

    assert result.added == ("bicycle",)
    assert result.removed == ("car",)


def test_request_deadline_cancels_detection_and_cleans_up(make_orchestrator, settings, workspace_root: Path) -> None:
    config = settings.model_copy(deep=True)
    config.limits.request_timeout_seconds = 0.2
    detector = ScriptedDetector(DETECTIONS, delay_seconds=0.3)
    orchestrator = make_orchestrator(detector=detector, config=config)
    job = ComparisonJob()

    with pytest.raises(RequestTimeout) as excinfo:
        _compare(orchestrator, b"street-before", b"street-after", job=job)

    assert excinfo.value.code == "Timeout"
    assert job.state is RequestState.FAILED
    assert RequestState.DETECTING in job.history
    assert RequestState.DIFFING not in job.history
    assert _leftover_files(workspace_root) == []
    # frames waiting for a detection slot are never submitted once the deadline passes
    assert detector.calls < 10


def test_requests_beyond_capacity_are_rejected(make_orchestrator, settings) -> None:
    config = settings.model_copy(deep=True)
    config.limits.max_concurrent_requests = 1
    detector = ScriptedDetector(DETECTIONS, delay_seconds=0.05)
    orchestrator = make_orchestrator(detector=detector, config=config)

    async def _run_two():
        first = asyncio.create_task(
            orchestrator.compare(make_upload("video1", b"street-before"), make_upload("video2", b"street-after"))
        )
        await asyncio.sleep(0)
        with pytest.raises(ResourceExhaustion):
            await orchestrator.compare(make_upload("video1", b"street-before"), make_upload("video2", b"street-after"))
        return await first

    result = asyncio.run(_run_two())

    assert result.added == ("bicycle",)
    assert orchestrator.active_requests == 0


class _CountedImage:
    """Stand-in image that tracks how many instances are alive at once."""

    live = 0
    _lock = threading.Lock()

    def __init__(self) -> None:
        with _CountedImage._lock:
            _CountedImage.live += 1

    def __del__(self) -> None:
        with _CountedImage._lock:
            _CountedImage.live -= 1


class _CountedSampler(ScriptedSampler):
    def sample(self, video_path, cancel_event=None):
        self.calls.append(Path(video_path))
        for index in range(30):
            if cancel_event is not None and cancel_event.is_set():
                return
            yield Frame(index=index, timestamp_seconds=float(index), image=_CountedImage())


class _PeakTrackingDetector(ObjectDetector):
    name = "peak-tracking"

    def __init__(self) -> None:
        self.peak = 0
        self._lock = threading.Lock()

    def detect(self, frame: Frame) -> list[Detection]:
        with self._lock:
            self.peak = max(self.peak, _CountedImage.live)
        time.sleep(0.01)
        return [Detection("dog", 0.9)]


def test_decoded_frames_in_memory_stay_bounded_by_workers(make_orchestrator, settings) -> None:
    detector = _PeakTrackingDetector()
    orchestrator = make_orchestrator(detector=detector, sampler=_CountedSampler(SCENES))
    workers = settings.detection.workers

    result = _compare(orchestrator, b"long-before", b"long-after")

    assert result.added == ()
    assert result.removed == ()
    assert result.video1_labels is not None
    assert result.video1_labels.frame_count == 30
    assert 0 < detector.peak <= 2 * (workers + 2)


def test_closed_orchestrator_rejects_new_comparisons(make_orchestrator) -> None:
    orchestrator = make_orchestrator()
    orchestrator.close()
    job = ComparisonJob()

    with pytest.raises(ResourceExhaustion, match="shutting down") as excinfo:
        _compare(orchestrator, b"street-before", b"street-after", job=job)

    assert excinfo.value.status_code == 503
    assert job.state is RequestState.FAILED
    assert job.failure_code == "ResourceExhaustion"
    assert orchestrator.active_requests == 0


def test_unavailable_detector_fails_with_detection_failure(make_orchestrator) -> None:
    class _Unloadable(ScriptedDetector):
        def load(self) -> None:
            raise OSError("weights not found")

    orchestrator = make_orchestrator(detector=_Unloadable(DETECTIONS))

    with pytest.raises(DetectionFailure, match="unavailable"):
        _compare(orchestrator, b"street-before", b"street-after")


def test_unexpected_errors_surface_as_internal_error(make_orchestrator, workspace_root: Path) -> None:
    class _ExplodingSampler(ScriptedSampler):
        def sample(self, video_path, cancel_event=None):
            raise KeyError("decoder state")

    orchestrator = make_orchestrator(sampler=_ExplodingSampler(SCENES))
    job = ComparisonJob()

    with pytest.raises(InternalError):
        _compare(orchestrator, b"street-before", b"street-after", job=job)

    assert job.failure_code == "InternalError"
    assert _leftover_files(workspace_root) == []


def test_probe_runs_when_enabled(make_orchestrator, settings) -> None:
    config = settings.model_copy(deep=True)
    config.limits.probe_with_ffprobe = True
    orchestrator = make_orchestrator(config=config)
    probed: list[str] = []

    def _fake_probe(path: Path) -> dict[str, object]:
        probed.append(path.name)
        if path.read_bytes() == b"street-after":
            raise UnsupportedFormat("No video stream found in upload: video2.mp4")
        return {"video_stream_count": 1}

    orchestrator.probe = _fake_probe

    with pytest.raises(UnsupportedFormat, match="No video stream"):
        _compare(orchestrator, b"street-before", b"street-after")

    assert probed == ["video1.mp4", "video2.mp4"]


def test_detector_adapter_confidence_cutoff_applies_in_pipeline(make_orchestrator) -> None:
    detector = ScriptedDetector(
        {
            "dog+car": [Detection("dog", 0.9), Detection("car", 0.4)],
            "dog+bicycle": [Detection("dog", 0.9), Detection("bicycle", 0.7)],
        }
    )
    orchestrator = make_orchestrator(detector=detector)

    result = _compare(orchestrator, b"street-before", b"street-after")

    assert result.to_response() == {"added_in_video2": ["bicycle"], "removed_in_video2": []}
