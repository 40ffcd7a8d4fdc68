"""
Logging setup for the pool engine and its API.

Two output formats, picked with LOG_FORMAT:
- dev  : coloured single line per record (default)
- json : one JSON object per line, for log shippers
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "dev").lower()

ROOT_LOGGER = "pools"

# Extra attributes callers attach through `extra={...}`
_CONTEXT_KEYS = ("pool_id", "participant", "request_id", "event", "amount", "code")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        row: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            if hasattr(record, key):
                row[key] = getattr(record, key)
        if record.exc_info and record.exc_info[1]:
            row["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else "Unknown",
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(row, default=str)


class DevFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now(timezone.utc).strftime("%H:%M:%S")
        msg = record.getMessage()
        pool_id = getattr(record, "pool_id", None)
        if pool_id:
            msg = f"[{pool_id}] {msg}"
        line = f"{color}{ts} [{record.levelname:>8s}]{self.RESET} {record.name}: {msg}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


_configured = False


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Attach a single stream handler to the `pools` logger tree."""
    global _configured
    root = logging.getLogger(ROOT_LOGGER)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if (fmt or LOG_FORMAT) == "json" else DevFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, (level or LOG_LEVEL), logging.INFO))
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Return a child of the `pools` logger, configuring handlers on first use.

    Args:
        name: dotted suffix, e.g. "engine" or "api.app"
    """
    if not _configured:
        setup_logging()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
