"""Logging configuration."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MAX_LOG_BYTES = 2 * 1024 * 1024
LOG_BACKUP_COUNT = 3

_ROOT_LOGGER_NAME = "healthflow"


def configure_logging(level: str | int = "INFO", log_file: Path | None = None) -> logging.Logger:
    """Attach stdout and optional rotating file handlers to the package logger.

    Calling this more than once only updates the level; handlers are added once.
    """
    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)
    if not any(getattr(handler, "_healthflow_stream", False) for handler in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        stream_handler._healthflow_stream = True  # type: ignore[attr-defined]
        logger.addHandler(stream_handler)

    if log_file is not None and not any(
        isinstance(handler, RotatingFileHandler) for handler in logger.handlers
    ):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
