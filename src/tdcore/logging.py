"""Structured JSON logging for tdcore.

One JSON object per line in ``.todos/tdcore.log``, rotated at 5MB with 3
backups. Lines carry the same canonical UTC timestamps as the action log, so
a log line and the journal row it describes sort together, and every line is
stamped with the session that opened the handle.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from tdcore.ids import format_timestamp

_LOG_FILENAME = "tdcore.log"
_setup_lock = threading.Lock()
_MAX_BYTES = 5 * 1024 * 1024  # 5MB
_BACKUP_COUNT = 3

# Record attributes copied into the JSON line when a caller passes them via ``extra=``
_EXTRA_FIELDS = ("op", "entity", "session", "duration_ms", "error")


class _SessionFilter(logging.Filter):
    """Stamp records that carry no ``session`` extra with the handle's session."""

    def __init__(self, session: str = "") -> None:
        super().__init__()
        self.session = session

    def filter(self, record: logging.LogRecord) -> bool:
        if self.session and not hasattr(record, "session"):
            record.session = self.session
        return True


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": format_timestamp(datetime.fromtimestamp(record.created, UTC)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def _session_filter(handler: logging.Handler) -> _SessionFilter | None:
    for f in handler.filters:
        if isinstance(f, _SessionFilter):
            return f
    return None


def setup_logging(todos_dir: Path, level: int = logging.INFO, session: str = "") -> logging.Logger:
    """Attach a rotating JSONL handler for ``.todos/tdcore.log`` to the ``tdcore`` logger.

    A second call for the same file keeps the handler and only updates the
    session stamp; a call for a different file replaces the old handler.
    """
    logger = logging.getLogger("tdcore")
    log_path = todos_dir / _LOG_FILENAME
    target_filename = os.path.abspath(str(log_path))

    with _setup_lock:
        for h in logger.handlers[:]:
            if not isinstance(h, RotatingFileHandler):
                continue
            if h.baseFilename == target_filename:
                existing = _session_filter(h)
                if existing is not None:
                    existing.session = session
                return logger
            logger.removeHandler(h)
            h.close()

        handler = RotatingFileHandler(
            str(log_path),
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
        )
        handler.setFormatter(_JsonFormatter())
        handler.addFilter(_SessionFilter(session))
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger
