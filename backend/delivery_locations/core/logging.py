"""Loguru setup shared by the API process and the operator scripts.

Every record carries the ``request_id`` of the HTTP request and the
``progress_id`` of the sync run it was emitted under (``-`` when neither
applies). Standard-library loggers (uvicorn, SQLAlchemy, httpx) are routed
into the same JSON sink.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from sys import stdout
from typing import Any, Iterator

from loguru import logger

from delivery_locations.core.config import settings

request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")
progress_id_ctx_var: ContextVar[str] = ContextVar("progress_id", default="-")

_QUIET_LOGGERS = {"httpx": logging.WARNING, "sqlalchemy.engine": logging.WARNING}


def _patch_record(record: dict[str, Any]) -> None:
    record["extra"].setdefault("request_id", request_id_ctx_var.get())
    record["extra"].setdefault("progress_id", progress_id_ctx_var.get())


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to Loguru, keeping level and caller."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


@contextmanager
def progress_context(progress_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``progress_id``."""
    token = progress_id_ctx_var.set(progress_id)
    try:
        yield
    finally:
        progress_id_ctx_var.reset(token)


def setup_logging() -> None:
    level = settings.LOG_LEVEL.upper()
    logging.basicConfig(handlers=[InterceptHandler()], level=level, force=True)
    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logger.remove()
    logger.configure(patcher=_patch_record)
    logger.add(
        stdout,
        level=level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        serialize=True,
    )
