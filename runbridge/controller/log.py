"""Logging configuration using loguru.

Intercepts stdlib logging so that the kubernetes client, urllib3 and uvicorn
all flow through loguru with a unified format.  Records carrying a bound
``key`` (the record being reconciled) render it after the level.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk the call stack so loguru reports the real call-site
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _format(record: dict) -> str:
    key = record["extra"].get("key")
    key_part = f"<magenta>[{key}]</magenta> " if key else ""
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        f"{key_part}<level>{{message}}</level>\n{{exception}}"
    )


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru as the sole logging sink.

    Call this once at process startup, before the manager starts.
    """
    level = level.upper()

    logger.remove()
    logger.add(sys.stderr, level=level, format=_format)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    # Quiet down noisy libraries
    for name in ("uvicorn.access", "urllib3", "kubernetes.client.rest"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging initialised (level={})", level)
