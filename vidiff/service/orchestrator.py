from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import closing
from pathlib import Path
from typing import Any

from vidiff.compare.aggregate import aggregate_detections
from vidiff.compare.diff import diff_label_sets
from vidiff.config import Settings
from vidiff.detect.detector import DetectorAdapter, build_detector
from vidiff.errors import (
    DetectionFailure,
    InternalError,
    PayloadTooLarge,
    RequestTimeout,
    ResourceExhaustion,
    UnsupportedFormat,
    VideoDiffError,
)
from vidiff.ingest.probe import probe_video
from vidiff.ingest.sampler import FrameSampler
from vidiff.models import (
    ComparisonJob,
    ComparisonResult,
    Frame,
    FrameDetections,
    LabelSet,
    RequestState,
    StoredVideo,
    VideoUpload,
)
from vidiff.service.storage import RequestWorkspace

logger = logging.getLogger(__name__)

ProbeFunction = Callable[[Path], Any]

# how often a producer waiting for a detection slot re-checks for cancellation
SLOT_POLL_SECONDS = 0.05


class ComparisonOrchestrator:
    """Drive validation, sampling, detection, aggregation and diffing for one request at a time.

    One orchestrator serves the whole process. The detector worker pool is
    shared by every request so total detection concurrency stays bounded;
    nothing else is shared between requests.
    """

    def __init__(
        self,
        settings: Settings,
        detector: DetectorAdapter,
        sampler: FrameSampler | None = None,
        probe: ProbeFunction = probe_video,
    ) -> None:
        self.settings = settings
        self.detector = detector
        self.sampler = sampler or FrameSampler.from_settings(settings.sampling)
        self.probe = probe
        self._pool = ThreadPoolExecutor(
            max_workers=settings.detection.workers,
            thread_name_prefix="vidiff-detect",
        )
        self._lock = threading.Lock()
        self._active_requests = 0
        self._detector_ready = False
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> ComparisonOrchestrator:
        detector = DetectorAdapter.from_settings(build_detector(settings.detection), settings.detection)
        return cls(settings, detector)

    @property
    def active_requests(self) -> int:
        return self._active_requests

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=False, cancel_futures=True)

    async def compare(
        self,
        video1: VideoUpload,
        video2: VideoUpload,
        *,
        job: ComparisonJob | None = None,
    ) -> ComparisonResult:
        """Compare two uploads and return the labels added and removed in video2.

        Either a complete result is returned or exactly one VideoDiffError is
        raised; temporary files are gone by the time this returns or raises.
        """

        job = job or ComparisonJob()
        limits = self.settings.limits

        try:
            self._admit()
        except ResourceExhaustion as exc:
            job.fail(exc.code, exc.message)
            raise

        cancel_event = threading.Event()
        try:
            with RequestWorkspace(limits.temp_dir, limits.max_payload_bytes) as workspace:
                try:
                    result = await asyncio.wait_for(
                        self._run(job, workspace, video1, video2, cancel_event),
                        timeout=limits.request_timeout_seconds,
                    )
                except asyncio.TimeoutError as exc:
                    raise RequestTimeout(
                        f"Comparison exceeded the {limits.request_timeout_seconds:g}s deadline."
                    ) from exc
                finally:
                    cancel_event.set()
        except VideoDiffError as exc:
            logger.warning(
                "Comparison %s failed during %s: %s: %s",
                job.request_id,
                job.state.value,
                exc.code,
                exc.message,
            )
            job.fail(exc.code, exc.message)
            raise
        except asyncio.CancelledError:
            logger.info("Comparison %s cancelled during %s", job.request_id, job.state.value)
            job.fail("Cancelled", "Request was cancelled.")
            raise
        except Exception as exc:
            logger.exception("Comparison %s failed unexpectedly during %s", job.request_id, job.state.value)
            job.fail(InternalError.code, "Unexpected error while comparing videos.")
            raise InternalError("Unexpected error while comparing videos.") from exc
        finally:
            self._release()

        self._advance(job, RequestState.COMPLETED)
        logger.info(
            "Comparison %s completed in %.2fs: %s added, %s removed",
            job.request_id,
            job.elapsed_seconds(),
            len(result.added),
            len(result.removed),
        )
        return result

    async def _run(
        self,
        job: ComparisonJob,
        workspace: RequestWorkspace,
        video1: VideoUpload,
        video2: VideoUpload,
        cancel_event: threading.Event,
    ) -> ComparisonResult:
        self._advance(job, RequestState.VALIDATING)
        uploads = (video1, video2)
        for upload in uploads:
            self._validate_declared(upload)

        stored: list[StoredVideo] = []
        for upload in uploads:
            stored.append(await asyncio.to_thread(workspace.store, upload))
            logger.debug("Stored %s (%s bytes)", upload.field_name, stored[-1].size_bytes)

        if self.settings.limits.probe_with_ffprobe:
            for video in stored:
                await asyncio.to_thread(self._probe, video)

        await self._ensure_detector_ready()

        # shared by both videos: decoded-but-undetected frames of this request
        window = threading.BoundedSemaphore(self.settings.detection.workers)
        tasks = [
            asyncio.create_task(
                self._video_pipeline(job, video, cancel_event, window),
                name=f"pipeline-{video.field_name}",
            )
            for video in stored
        ]
        try:
            video1_labels, video2_labels = await asyncio.gather(*tasks)
        except BaseException:
            # one pipeline failing ends the request; do not leave the other running
            cancel_event.set()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        self._advance(job, RequestState.DIFFING)
        return diff_label_sets(video1_labels, video2_labels)

    async def _video_pipeline(
        self,
        job: ComparisonJob,
        video: StoredVideo,
        cancel_event: threading.Event,
        window: threading.BoundedSemaphore,
    ) -> LabelSet:
        self._advance(job, RequestState.SAMPLING)
        loop = asyncio.get_running_loop()

        def _first_frame_submitted() -> None:
            if not cancel_event.is_set():
                loop.call_soon_threadsafe(self._advance, job, RequestState.DETECTING)

        outcomes = await asyncio.to_thread(
            self._sample_and_detect,
            video,
            cancel_event,
            window,
            _first_frame_submitted,
        )
        self._advance(job, RequestState.DETECTING)

        dropped = sum(1 for outcome in outcomes if not outcome.usable)
        logger.info("Detected objects in %s sampled frames of %s", len(outcomes), video.field_name)
        if dropped:
            logger.warning("Dropped %s of %s frames from %s", dropped, len(outcomes), video.field_name)

        self._advance(job, RequestState.AGGREGATING)
        label_set = aggregate_detections(
            outcomes,
            self.settings.aggregation.persistence_threshold,
            source=video.field_name,
        )
        logger.info("%s persistent labels: %s", video.field_name, ", ".join(label_set.scores) or "none")
        return label_set

    def _sample_and_detect(
        self,
        video: StoredVideo,
        cancel_event: threading.Event,
        window: threading.BoundedSemaphore,
        on_first_frame: Callable[[], None],
    ) -> list[FrameDetections]:
        """Stream sampled frames into the detector pool as they are decoded.

        Runs on a worker thread so the sampler's capture stays on one thread.
        Frames in flight are bounded by `window`; at most one more decoded
        frame per video waits for a free slot. Nothing keeps an image after
        its detection finishes, only the FrameDetections outcome survives.
        """

        futures: list[Future[FrameDetections]] = []
        try:
            with closing(self.sampler.sample(video.path, cancel_event=cancel_event)) as frames:
                for frame in frames:
                    if not _acquire_slot(window, cancel_event):
                        break
                    future = self._pool.submit(self._detect_frame, frame, video.field_name, cancel_event)
                    future.add_done_callback(lambda _done: window.release())
                    if not futures:
                        on_first_frame()
                    futures.append(future)
                    del frame
            # submission order; the aggregator restores timestamp order anyway
            return [future.result() for future in futures]
        finally:
            for future in futures:
                future.cancel()

    def _detect_frame(self, frame: Frame, source: str, cancel_event: threading.Event) -> FrameDetections:
        if cancel_event.is_set():
            return FrameDetections(frame.index, frame.timestamp_seconds, error="cancelled")

        try:
            detections = self.detector.detect(frame)
        except DetectionFailure as exc:
            logger.warning("Dropping frame %s of %s: %s", frame.index, source, exc)
            return FrameDetections(frame.index, frame.timestamp_seconds, error=str(exc))

        return FrameDetections(frame.index, frame.timestamp_seconds, detections)

    async def _ensure_detector_ready(self) -> None:
        if self._detector_ready:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._pool, self.detector.ensure_ready)
        self._detector_ready = True

    def _validate_declared(self, upload: VideoUpload) -> None:
        limits = self.settings.limits
        media_type = (upload.media_type or "").split(";")[0].strip().lower()
        allowed = {item.lower() for item in limits.allowed_media_types}

        if not media_type.startswith("video/") or (allowed and media_type not in allowed):
            raise UnsupportedFormat(
                f"{upload.field_name} has unsupported media type '{upload.media_type}'; expected video/*."
            )
        if upload.size is not None and upload.size > limits.max_payload_bytes:
            raise PayloadTooLarge(
                f"{upload.field_name} is {upload.size} bytes; the maximum is {limits.max_payload_bytes} bytes."
            )

    def _probe(self, video: StoredVideo) -> None:
        metadata = self.probe(video.path)
        logger.debug("Probed %s: %s", video.field_name, metadata)

    def _advance(self, job: ComparisonJob, state: RequestState) -> None:
        if job.advance(state):
            logger.info("Comparison %s -> %s", job.request_id, state.value)

    def _admit(self) -> None:
        limit = self.settings.limits.max_concurrent_requests
        with self._lock:
            if self._closed:
                raise ResourceExhaustion("Comparison service is shutting down; retry later.")
            if self._active_requests >= limit:
                raise ResourceExhaustion(
                    f"{self._active_requests} comparisons already in progress (limit {limit}); retry later."
                )
            self._active_requests += 1

    def _release(self) -> None:
        with self._lock:
            self._active_requests = max(0, self._active_requests - 1)


def _acquire_slot(window: threading.BoundedSemaphore, cancel_event: threading.Event) -> bool:
    while not cancel_event.is_set():
        if window.acquire(timeout=SLOT_POLL_SECONDS):
            return True
    return False
