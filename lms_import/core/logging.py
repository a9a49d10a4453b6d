"""Centralized logging configuration for the import service."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_HANDLER_MARKER = "_lms_import_handler"


def configure_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: Path | None = None,
    handlers: Iterable[logging.Handler] | None = None,
) -> Logger:
    """Configure the root logger once; repeated calls only adjust the level."""

    logger = logging.getLogger()
    logger.setLevel(level)

    if any(getattr(handler, _HANDLER_MARKER, False) for handler in logger.handlers):
        return logger

    if handlers is None:
        formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        handlers = [stream_handler]
        if log_dir is not None:
            file_handler = logging.FileHandler(get_log_file_path(log_dir), encoding="utf-8")
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

    for handler in handlers:
        setattr(handler, _HANDLER_MARKER, True)
        logger.addHandler(handler)

    return logger


def get_log_file_path(log_dir: Path) -> Path:
    """Return the default path for the application log file."""

    return log_dir / "lms_import.log"


__all__ = ["configure_logging", "get_log_file_path", "DEFAULT_LOG_FORMAT"]
