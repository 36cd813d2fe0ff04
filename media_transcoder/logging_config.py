from __future__ import annotations

import logging

from media_transcoder.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_BYTE_SUFFIXES = ("B", "KB", "MB", "GB", "TB")


def configure_logging(settings: LoggingSettings) -> None:
    """Configure process-wide logging once at startup."""

    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format=DEFAULT_LOG_FORMAT,
        force=True,
    )


def format_byte_size(num_bytes: int | float) -> str:
    """Human-readable byte count for log lines, e.g. ``4.2 MB``."""

    value = float(num_bytes)
    index = 0
    while value >= 1024 and index < len(_BYTE_SUFFIXES) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {_BYTE_SUFFIXES[index]}"
