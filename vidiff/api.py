from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from vidiff.config import Settings, load_settings
from vidiff.errors import ResourceExhaustion, ValidationError, VideoDiffError
from vidiff.logging_config import configure_logging
from vidiff.models import VideoUpload
from vidiff.service.orchestrator import ComparisonOrchestrator

logger = logging.getLogger(__name__)


class ComparisonResponse(BaseModel):
    added_in_video2: list[str]
    removed_in_video2: list[str]


class ErrorResponse(BaseModel):
    error: str
    message: str


class HealthResponse(BaseModel):
    status: str
    active_requests: int


class App(FastAPI):
    def __init__(self,
                 settings: Settings,
                 orchestrator: ComparisonOrchestrator,
                 **kwargs,
        ):
        super().__init__(lifespan=_lifespan, **kwargs)
        self.settings = settings
        self.orchestrator = orchestrator

        self.add_middleware(
            CORSMiddleware,
            allow_origins=settings.server.cors_origins,
            allow_credentials="*" not in settings.server.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self.add_exception_handler(VideoDiffError, _video_diff_error_handler)
        self.add_exception_handler(RequestValidationError, _request_validation_error_handler)

        self.init_routes()

    def init_routes(self):
        """Initializes API routes for the application."""
        @self.post(
            '/compare-videos',
            responses={
                400: {"model": ErrorResponse},
                413: {"model": ErrorResponse},
                415: {"model": ErrorResponse},
                422: {"model": ErrorResponse},
                502: {"model": ErrorResponse},
                503: {"model": ErrorResponse},
                504: {"model": ErrorResponse},
            },
        )
        async def compare_videos(
            video1: UploadFile = File(...),
            video2: UploadFile = File(...),
        ) -> ComparisonResponse:
            """Compares objects detected in two videos."""
            result = await self.orchestrator.compare(
                _to_video_upload('video1', video1),
                _to_video_upload('video2', video2),
            )
            return ComparisonResponse(**result.to_response())

        @self.get('/health')
        async def health() -> HealthResponse:
            return HealthResponse(status='ok', active_requests=self.orchestrator.active_requests)


@asynccontextmanager
async def _lifespan(app: App) -> AsyncIterator[None]:
    yield
    app.orchestrator.close()


async def _video_diff_error_handler(request: Request, exc: VideoDiffError) -> JSONResponse:
    headers = None
    if isinstance(exc, ResourceExhaustion):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


async def _request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # missing or malformed multipart parts are bad input, not an unusable video
    fields = sorted({str(error["loc"][-1]) for error in exc.errors() if error.get("loc")})
    error = ValidationError(
        f"Missing or invalid form field(s): {', '.join(fields)}; expected video1 and video2 uploads."
        if fields
        else "Malformed request; expected multipart form fields video1 and video2."
    )
    return await _video_diff_error_handler(request, error)


def _to_video_upload(field_name: str, upload: UploadFile) -> VideoUpload:
    return VideoUpload(
        field_name=field_name,
        filename=upload.filename or field_name,
        media_type=upload.content_type or '',
        stream=upload.file,
        size=getattr(upload, 'size', None),
    )


def create_app(
    settings: Settings | None = None,
    orchestrator: ComparisonOrchestrator | None = None,
) -> App:
    """Build the HTTP application (also usable as a uvicorn `--factory`)."""

    if settings is None:
        settings = load_settings()
        configure_logging(settings.logging)
    if orchestrator is None:
        orchestrator = ComparisonOrchestrator.from_settings(settings)

    logger.info(
        "Serving comparisons with %s detector, %s workers",
        settings.detection.backend,
        settings.detection.workers,
    )
    return App(settings, orchestrator, title="Video object diff")
