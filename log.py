"""Structured logging for langhelper.

Every record is one JSON object per line. The webhook handlers, the supply
loop and the push scheduler tag their records with ``component`` and, where
one exists, ``user_id``, so a single user's day can be followed with
``grep '"user_id": "U…"'``.

LANGHELPER_LOG_LEVEL picks the threshold (DEBUG/INFO/WARNING/ERROR).
LANGHELPER_LOG_FORMAT=text switches to plain lines for local runs.
"""
import logging
import json
import os
import sys
from typing import Any

# Attributes copied from ``extra=`` into the JSON record
EXTRA_FIELDS = (
    "component", "user_id", "course", "attempt", "count",
    "detail", "duration_ms", "endpoint", "status_code",
)

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One record, one line of JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key)) for key in EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["error"] = str(exc)
            entry["error_type"] = type(exc).__name__
        return json.dumps(entry, ensure_ascii=False, default=str)


def _build_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    if os.environ.get("LANGHELPER_LOG_FORMAT", "json") == "text":
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%H:%M:%S"))
    else:
        handler.setFormatter(JSONFormatter())
    return handler


def get_logger(name: str = "langhelper") -> logging.Logger:
    """Return the named logger, attaching the langhelper handler on first use.

        logger = get_logger("langhelper.scheduler")
        logger.info("Scheduled push sent", extra={"component": "scheduler", "user_id": uid})
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    level = os.environ.get("LANGHELPER_LOG_LEVEL", "INFO").upper()
    logger.setLevel(getattr(logging, level, logging.INFO))
    logger.addHandler(_build_handler())
    logger.propagate = False
    return logger
