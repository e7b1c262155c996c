from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "VIDEO_DIFF_"


class SamplingSettings(BaseModel):
    interval_seconds: float = Field(default=1.0, gt=0)
    max_frames: int = Field(default=32, ge=1)


class DetectionSettings(BaseModel):
    backend: str = "ultralytics"
    model: str = "yolov8n.pt"
    device: str = "auto"
    image_size: int = 640
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    workers: int = Field(default=4, ge=1)
    max_retries: int = Field(default=1, ge=0, le=1)


class AggregationSettings(BaseModel):
    persistence_threshold: float = Field(default=0.2, ge=0.0, lt=1.0)


class LimitSettings(BaseModel):
    max_payload_bytes: int = Field(default=200 * 1024 * 1024, gt=0)
    request_timeout_seconds: float = Field(default=120.0, gt=0)
    max_concurrent_requests: int = Field(default=2, ge=1)
    allowed_media_types: list[str] = Field(default_factory=list)
    probe_with_ffprobe: bool = False
    temp_dir: Path | None = None


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 7860
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    sampling: SamplingSettings = Field(default_factory=SamplingSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    limits: LimitSettings = Field(default_factory=LimitSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides.

    An explicitly requested config file must exist. When only the default
    location is implied and nothing is there, built-in defaults are used so
    the service can be configured through the environment alone.
    """

    explicit_path = config_path or os.getenv(f"{ENV_PREFIX}CONFIG")
    resolved_path = Path(explicit_path or DEFAULT_CONFIG_PATH)

    if explicit_path or resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    else:
        raw_config = {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    if existing_value is None and raw_value == "":
        return None
    return raw_value
