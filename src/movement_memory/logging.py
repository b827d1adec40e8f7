"""Structured logging for the movement memory worker.

MM_LOG_FORMAT selects "json" (default) or "text". Fields bound with
``log_context`` (job id, user, exercise) are attached to every record
emitted inside the block as ``mm_*`` attributes, so handlers and the
recompute path never have to pass them by hand.
"""

import json
import logging
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

_context: ContextVar[dict[str, Any]] = ContextVar("mm_log_context", default={})

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s%(mm_context)s"


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind ``mm_<name>`` fields for every log record emitted in the block.

    Nested blocks add to (and may override) the outer fields.
    """
    bound = {**_context.get(), **{f"mm_{k}": v for k, v in fields.items() if v is not None}}
    token = _context.set(bound)
    try:
        yield
    finally:
        _context.reset(token)


def current_context() -> dict[str, Any]:
    return dict(_context.get())


class ContextFilter(logging.Filter):
    """Copy bound context onto the record; explicit ``extra=`` values win."""

    def filter(self, record: logging.LogRecord) -> bool:
        bound = _context.get()
        for key, value in bound.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        record.mm_context = "".join(
            f" {key[3:]}={value}" for key, value in sorted(bound.items())
        )
        return True


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        entry.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key.startswith("mm_") and key != "mm_context"
        )
        return json.dumps(entry, default=str)


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    """Point the root logger at stderr with the chosen format and context filter."""
    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(ContextFilter())
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root.addHandler(handler)
