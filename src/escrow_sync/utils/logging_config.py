"""JSON line logging for the daemon and CLI.

Every record under the ``escrow_sync`` logger tree is rendered as one JSON
object. Keyword arguments passed to :class:`StructuredLogger` methods become
top-level keys, so ``logger.info("Refreshed", escrow=addr, attempts=2)`` can be
filtered by escrow address downstream.
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

ROOT_LOGGER = "escrow_sync"
LOG_FILE_NAME = "escrow-sync.log"

# Third-party loggers that are too chatty at INFO.
_QUIET = ("uvicorn.access", "httpx", "httpcore")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry.update(fields)
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _file_handler(log_dir: str) -> logging.Handler | None:
    try:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path / LOG_FILE_NAME)
    except OSError as exc:
        print(f"escrow-sync: file logging disabled ({exc})", file=sys.stderr)
        return None


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Route the package logger to stdout, and to a file when ESCROW_SYNC_LOG_DIR is set.

    Safe to call more than once; handlers are replaced rather than stacked.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level.upper())
    root.propagate = False

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_dir = os.getenv("ESCROW_SYNC_LOG_DIR")
    if log_dir:
        file_handler = _file_handler(log_dir)
        if file_handler is not None:
            handlers.append(file_handler)

    formatter = JSONFormatter()
    for handler in handlers:
        handler.setFormatter(formatter)
    root.handlers = handlers

    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root


class StructuredLogger:
    """Thin wrapper that turns keyword arguments into JSON fields."""

    def __init__(self, name: str):
        if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
            name = f"{ROOT_LOGGER}.{name}"
        self.logger = logging.getLogger(name)

    def _emit(self, level: int, msg: str, fields: dict[str, Any]) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, msg, extra={"fields": fields}, stacklevel=3)

    def debug(self, msg: str, **fields):
        self._emit(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields):
        self._emit(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields):
        self._emit(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields):
        self._emit(logging.ERROR, msg, fields)

    def critical(self, msg: str, **fields):
        self._emit(logging.CRITICAL, msg, fields)
