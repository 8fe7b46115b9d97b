"""
Logging setup for collforge.

Library modules only create loggers (logging.getLogger(__name__)); handlers
are installed by applications, or by setup_logging() for scripts and the
schema CLI.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import json_log_formatter

from .config import Settings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(json_log_formatter.JSONFormatter):
    """One JSON object per line: message, time, level, logger and extras."""

    def json_record(self, message: str, extra: Dict[str, Any], record: logging.LogRecord) -> Dict[str, Any]:
        extra = super().json_record(message, extra, record)
        extra["level"] = record.levelname
        extra["logger"] = record.name
        return extra


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure logging based on settings.

    Args:
        settings: Engine settings (loaded from env if not provided)
    """
    settings = settings or Settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
