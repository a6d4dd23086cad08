# =============================================================================
# Logging Configuration - Structured JSON or Plain Console Output
# =============================================================================
#
# Every module logs through `logging.getLogger(__name__)`. This module only
# installs the root handler once, at app startup.
#
# JSON lines carry the message plus any context passed via `extra=`:
#   logger.error("job.persist_failed", extra={"job_id": ..., "stage": ...})
# becomes
#   {"ts": "...", "level": "ERROR", "logger": "app.workers.queue",
#    "event": "job.persist_failed", "job_id": "...", "stage": "..."}
# =============================================================================

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

# Attributes every LogRecord carries; anything else came in via `extra=`.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "taskName"}

# Long string extras are truncated so a payload never floods a log line.
_MAX_EXTRA_LENGTH = 300


def _sanitise_extra(value: object) -> object:
    if isinstance(value, str):
        if len(value) > _MAX_EXTRA_LENGTH:
            return f"{value[: _MAX_EXTRA_LENGTH - 3]}..."
        return value
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return str(value)


class StructuredFormatter(logging.Formatter):
    """JSON formatter: one object per line, extras flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            entry[key] = _sanitise_extra(value)

        if record.exc_info and record.exc_info[1]:
            entry["error_type"] = type(record.exc_info[1]).__name__
            entry["error"] = _sanitise_extra(str(record.exc_info[1]))

        return json.dumps(entry, default=str)


class PlainFormatter(logging.Formatter):
    """Human-readable formatter for local development."""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
            datefmt="%H:%M:%S",
        )


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """
    Install a single stdout handler on the root logger.

    Idempotent: calling it again replaces the handler installed by a
    previous call instead of stacking a second one.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_app_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        StructuredFormatter() if fmt == "json" else PlainFormatter()
    )
    handler._app_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
