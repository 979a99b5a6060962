"""Logging setup with stream/job correlation propagation.

Every record emitted while a job runs carries the job id and the stream it
belongs to, so one record's path through upload and anchoring can be read
back from the logs.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from memchain.config import LoggingConfig

# Chatty at INFO: one line per HTTP request / scheduler tick.
_QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler")

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(stream_id)s %(job_id)s] %(message)s"


@dataclass(frozen=True, slots=True)
class CorrelationContext:
    stream_id: str | None = None
    job_id: str | None = None


_NO_CORRELATION = CorrelationContext()
_current: contextvars.ContextVar[CorrelationContext] = contextvars.ContextVar(
    "memchain_correlation", default=_NO_CORRELATION
)


def get_correlation_context() -> CorrelationContext:
    return _current.get()


class CorrelationFilter(logging.Filter):
    """Copy the active stream and job ids onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _current.get()
        record.stream_id = context.stream_id
        record.job_id = context.job_id
        return True


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stream_id = getattr(record, "stream_id", None)
        job_id = getattr(record, "job_id", None)
        record.stream_id = stream_id or "-"
        record.job_id = job_id or "-"
        try:
            return super().format(record)
        finally:
            record.stream_id = stream_id
            record.job_id = job_id


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; correlation keys only when set."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("stream_id", "job_id"):
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(level: int | str = logging.INFO, json_output: bool = False) -> None:
    """Replace the root handlers with one correlation-aware stdout handler."""
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter() if json_output else _TextFormatter(_TEXT_FORMAT))
    handler.addFilter(CorrelationFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    if logging.getLevelName(root.level) in ("DEBUG", "INFO"):
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_config(config: LoggingConfig) -> None:
    setup_logging(config.level.upper(), json_output=config.json_output)


@contextmanager
def correlation_scope(
    *, stream_id: str | None = None, job_id: str | None = None
) -> Iterator[CorrelationContext]:
    """Set correlation ids for the enclosed block; unset arguments keep the outer values."""
    outer = _current.get()
    inner = replace(
        outer,
        stream_id=stream_id if stream_id is not None else outer.stream_id,
        job_id=job_id if job_id is not None else outer.job_id,
    )
    token = _current.set(inner)
    try:
        yield inner
    finally:
        _current.reset(token)


__all__ = [
    "CorrelationContext",
    "CorrelationFilter",
    "JsonLogFormatter",
    "correlation_scope",
    "get_correlation_context",
    "setup_logging",
    "setup_logging_from_config",
]
