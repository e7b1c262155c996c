from __future__ import annotations

import logging

from vidiff.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
NOISY_LOGGERS = ("ultralytics", "python_multipart", "multipart")


def configure_logging(settings: LoggingSettings) -> None:
    """Configure process-wide logging once at startup (CLI and server alike)."""

    level = getattr(logging, settings.level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=DEFAULT_LOG_FORMAT,
        force=True,
    )

    # per-frame inference and multipart parsing chatter only when debugging
    third_party_level = logging.DEBUG if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)
