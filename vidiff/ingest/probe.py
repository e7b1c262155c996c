from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

from vidiff.errors import UnsupportedFormat

_SHARED_LIBRARY_MARKERS = ("error while loading shared libraries", "cannot open shared object file")


class FfprobeReadError(RuntimeError):
    """ffprobe ran but could not read the file."""


def probe_video(video_path: str | Path) -> dict[str, Any]:
    """Probe an uploaded file via ffprobe and require at least one video stream."""

    source_path = Path(video_path).expanduser().resolve()
    if not source_path.exists():
        raise FileNotFoundError(f"Video file not found: {source_path}")

    try:
        ffprobe_payload = _run_ffprobe(source_path)
    except FfprobeReadError as exc:
        raise UnsupportedFormat(f"Unable to read media container: {source_path.name}") from exc

    metadata = _normalize_probe_payload(source_path, ffprobe_payload)
    if metadata["video_stream_count"] == 0:
        raise UnsupportedFormat(f"No video stream found in upload: {source_path.name}")
    return metadata


def _run_ffprobe(video_path: Path) -> dict[str, Any]:
    command = [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(video_path),
    ]

    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        if any(marker in stderr for marker in _SHARED_LIBRARY_MARKERS):
            raise RuntimeError(
                "ffprobe is installed but failed to start because required shared libraries are missing. "
                f"ffprobe stderr: {stderr}"
            ) from exc
        details = f" ffprobe stderr: {stderr}" if stderr else ""
        raise FfprobeReadError(
            f"ffprobe failed while probing media file: {video_path}.{details}"
        ) from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise FfprobeReadError("ffprobe returned invalid JSON output.") from exc


def _normalize_probe_payload(video_path: Path, payload: dict[str, Any]) -> dict[str, Any]:
    format_entry = payload.get("format", {})
    streams = [_normalize_stream(stream) for stream in payload.get("streams", [])]
    video_streams = [stream for stream in streams if stream["codec_type"] == "video"]

    return {
        "video_path": str(video_path),
        "format_name": format_entry.get("format_name"),
        "duration_seconds": _to_float(format_entry.get("duration")),
        "size_bytes": _to_int(format_entry.get("size")),
        "streams": streams,
        "video_stream_count": len(video_streams),
        "video_codec": video_streams[0]["codec_name"] if video_streams else None,
    }


def _normalize_stream(stream: dict[str, Any]) -> dict[str, Any]:
    return {
        "index": stream.get("index"),
        "codec_type": stream.get("codec_type"),
        "codec_name": stream.get("codec_name"),
        "width": _to_int(stream.get("width")),
        "height": _to_int(stream.get("height")),
        "avg_frame_rate": stream.get("avg_frame_rate"),
        "nb_frames": _to_int(stream.get("nb_frames")),
    }


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    return float(raw_value)


def _to_int(raw_value: Any) -> int | None:
    if raw_value in (None, "N/A", ""):
        return None
    return int(raw_value)
