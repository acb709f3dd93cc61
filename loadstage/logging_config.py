"""Structured logging configuration for loadstage.

Level and format come from LOADSTAGE_LOG_LEVEL / LOADSTAGE_LOG_FORMAT, or
from the CLI's --log-level via set_level(). Run context passed with
`extra=` (scenario, user_id, target, live_users) is kept as separate keys
in JSON output.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any

LOG_LEVEL_ENV = "LOADSTAGE_LOG_LEVEL"
LOG_FORMAT_ENV = "LOADSTAGE_LOG_FORMAT"  # "json" | "text" (default)
ROOT_LOGGER_NAME = "loadstage"
CONTEXT_FIELDS = ("scenario", "user_id", "target", "live_users")


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the loadstage namespace. Configures the root loadstage logger on first use."""
    logger = logging.getLogger(ROOT_LOGGER_NAME if name == ROOT_LOGGER_NAME else f"{ROOT_LOGGER_NAME}.{name}")
    if not logging.getLogger(ROOT_LOGGER_NAME).handlers:
        _configure_root_logging()
    return logger


def set_level(level: str) -> None:
    """Override the level chosen from the environment (e.g. `--log-level debug`)."""
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    _configure_root_logging()
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(value)


def _configure_root_logging() -> None:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if root.handlers:
        return
    level_name = (os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    handler = logging.StreamHandler(sys.stderr)
    if (os.environ.get(LOG_FORMAT_ENV) or "text").lower() == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(_TextFormatter())
    root.addHandler(handler)
    # The handler above is the only sink for loadstage records
    root.propagate = False


class _TextFormatter(logging.Formatter):
    """`time [LEVEL] logger: message` with run context appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = _context(record)
        if ctx:
            line += " | " + " ".join(f"{k}={v}" for k, v in ctx.items())
        return line


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context(record),
        }
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False, default=str)


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {k: getattr(record, k) for k in CONTEXT_FIELDS if hasattr(record, k)}
