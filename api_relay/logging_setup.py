"""Logging bootstrap for the host application.

The host calls configure_logging() once at startup and shutdown_logging() at
exit. Executors never touch handlers; they only emit through the logger they
were given.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path


LOGGER_NAME = "api_relay"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_installed_handlers: list[logging.Handler] = []


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> logging.Logger:
    """Install stderr (and optional file) handlers on the api_relay logger.

    Calling again replaces the handlers installed by the previous call.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    _remove_handlers(logger)

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    _installed_handlers.append(stream_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        _installed_handlers.append(file_handler)

    for handler in _installed_handlers:
        logger.addHandler(handler)

    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def shutdown_logging() -> None:
    """Flush and detach the handlers installed by configure_logging()."""
    logger = logging.getLogger(LOGGER_NAME)
    _remove_handlers(logger)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


def _remove_handlers(logger: logging.Logger) -> None:
    while _installed_handlers:
        handler = _installed_handlers.pop()
        try:
            handler.flush()
        finally:
            logger.removeHandler(handler)
            handler.close()
