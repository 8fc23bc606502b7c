"""Logging setup and event helpers.

Modules log through ``logging.getLogger("modsync.<area>")`` and emit structured
events with :func:`log_event`. In text mode an event renders as a one-liner
``event key=value ...``; in json mode the formatter writes one JSON object per
line.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

from modsync.config import Settings

_EVENT_ATTR = "modsync_event"
_FIELDS_ATTR = "modsync_fields"


class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts_ms": int(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
        }
        event = getattr(record, _EVENT_ATTR, None)
        if event:
            payload["event"] = event
            payload.update(getattr(record, _FIELDS_ATTR, {}))
        else:
            payload["message"] = record.getMessage()
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Emit an event log line with key/value fields."""
    parts = [event]
    for key, value in fields.items():
        parts.append(f"{key}={value}")
    logger.log(level, " ".join(parts), extra={_EVENT_ATTR: event, _FIELDS_ATTR: fields})


def _build_handler(handler: logging.Handler, log_format: str) -> logging.Handler:
    if log_format.lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
        )
    return handler


def configure_logging(settings: Settings, *, log_file: Path | None = None) -> logging.Logger:
    """Install a handler on the ``modsync`` logger according to *settings*."""
    logger = logging.getLogger("modsync")
    logger.setLevel(settings.log_level.upper())
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    logger.addHandler(_build_handler(handler, settings.log_format))
    logger.propagate = False
    return logger


def elapsed_ms(started: float) -> int:
    """Milliseconds since a ``time.perf_counter()`` reading."""
    return int((time.perf_counter() - started) * 1000)
