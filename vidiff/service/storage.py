from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from types import TracebackType

from vidiff.errors import PayloadTooLarge
from vidiff.models import StoredVideo, VideoUpload

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class RequestWorkspace:
    """Temporary directory holding one request's uploads.

    Use as a context manager: the directory and everything stored in it is
    removed when the block exits, whether it succeeded, raised or was cancelled.
    """

    def __init__(self, root: str | Path | None = None, max_bytes: int | None = None) -> None:
        self.root = Path(root) if root is not None else None
        self.max_bytes = max_bytes
        self.path: Path | None = None

    def __enter__(self) -> RequestWorkspace:
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix="vidiff-", dir=self.root))
        logger.debug("Opened request workspace %s", self.path)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        if self.path is None:
            return
        shutil.rmtree(self.path, ignore_errors=True)
        logger.debug("Removed request workspace %s", self.path)
        self.path = None

    def store(self, upload: VideoUpload) -> StoredVideo:
        """Copy an upload into the workspace, enforcing the byte limit while copying."""

        if self.path is None:
            raise RuntimeError("Request workspace is not open.")

        target = self.path / f"{_safe_stem(upload.field_name)}{_safe_suffix(upload.filename)}"
        written = 0
        try:
            with target.open("wb") as handle:
                while True:
                    chunk = upload.stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if self.max_bytes is not None and written > self.max_bytes:
                        raise PayloadTooLarge(
                            f"{upload.field_name} exceeds the maximum upload size of {self.max_bytes} bytes."
                        )
                    handle.write(chunk)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        return StoredVideo(
            field_name=upload.field_name,
            filename=upload.filename,
            media_type=upload.media_type,
            path=target,
            size_bytes=written,
        )


def _safe_stem(raw: str) -> str:
    sanitized = "".join(ch if ch.isalnum() else "_" for ch in raw).strip("_")
    return sanitized or "upload"


def _safe_suffix(filename: str) -> str:
    suffix = Path(filename or "").suffix.lower()
    cleaned = "".join(ch for ch in suffix[1:] if ch.isalnum())[:10]
    return f".{cleaned}" if cleaned else ""
