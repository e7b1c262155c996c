from __future__ import annotations

from typing import Any


class VideoDiffError(Exception):
    """Base class for failures surfaced to callers as a single terminal error."""

    code = "InternalError"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class ValidationError(VideoDiffError):
    """Bad input. Never retried."""

    code = "ValidationError"
    status_code = 400


class UnsupportedFormat(ValidationError):
    code = "UnsupportedFormat"
    status_code = 415


class PayloadTooLarge(ValidationError):
    code = "PayloadTooLarge"
    status_code = 413


class DetectionFailure(VideoDiffError):
    """The detector could not classify a frame (or could not run at all)."""

    code = "DetectionFailure"
    status_code = 502


class TransientDetectionError(DetectionFailure):
    """A single-frame failure worth one more attempt."""


class NoUsableFrames(VideoDiffError):
    code = "NoUsableFrames"
    status_code = 422


class ResourceExhaustion(VideoDiffError):
    code = "ResourceExhaustion"
    status_code = 503
    retry_after_seconds = 5


class RequestTimeout(VideoDiffError):
    code = "Timeout"
    status_code = 504


class InternalError(VideoDiffError):
    code = "InternalError"
    status_code = 500
