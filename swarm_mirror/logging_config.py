"""
Logging Configuration — Structured logging setup for hook processes.

Every hook invocation is a short-lived process, so logs from pre-receive,
post-receive, the receive-pack wrapper and fetchers interleave. Lines carry
the pid so a single push can be followed across processes.

## Environment Variables

- SWARM_MIRROR_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- SWARM_MIRROR_LOG_FORMAT: json, text (default: text)
- SWARM_MIRROR_LOG_FILE: append logs to this file instead of stderr

## Usage

    from swarm_mirror.logging_config import setup_logging

    setup_logging()  # once, before any hook work
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LEVEL_ENV = "SWARM_MIRROR_LOG_LEVEL"
FORMAT_ENV = "SWARM_MIRROR_LOG_FORMAT"
FILE_ENV = "SWARM_MIRROR_LOG_FILE"

# Extra attributes mirror code attaches via `extra={...}`
CONTEXT_FIELDS = ("repo_path", "refs", "phase", "push_id")

LEVEL_COLORS = {
    logging.DEBUG: "36",
    logging.INFO: "32",
    logging.WARNING: "33",
    logging.ERROR: "31",
    logging.CRITICAL: "35",
}


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """The mirror context fields present on a record."""
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, for log shippers.

    {"ts": "...", "level": "INFO", "logger": "...", "pid": 123,
     "message": "...", "repo_path": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "pid": record.process,
            "message": record.getMessage(),
            **record_context(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """
    Text lines for operators tailing a hook log.

    2026-01-01 12:34:56 INFO    [push           ] (4242) Message
    """

    def __init__(self, colorize: bool = False):
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.colorize = colorize

    def _level(self, record: logging.LogRecord) -> str:
        padded = f"{record.levelname:7}"
        color = LEVEL_COLORS.get(record.levelno)
        if self.colorize and color:
            return f"\033[{color}m{padded}\033[0m"
        return padded

    def format(self, record: logging.LogRecord) -> str:
        source = record.name.rsplit(".", 1)[-1][:15]
        text = record.getMessage()
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)

        stamp = self.formatTime(record, self.datefmt)
        return f"{stamp} {self._level(record)} [{source:15}] ({record.process}) {text}"


def _build_handler(log_path: Optional[str]) -> logging.Handler:
    if log_path:
        return logging.FileHandler(log_path, encoding="utf-8")
    # stdout belongs to the git protocol during hooks
    return logging.StreamHandler(sys.stderr)


def setup_logging(
    level: str | None = None,
    format_type: str | None = None,
    log_file: str | None = None,
) -> None:
    """
    Install one handler on the root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR; falls back to SWARM_MIRROR_LOG_LEVEL, then INFO
        format_type: json or text; falls back to SWARM_MIRROR_LOG_FORMAT, then text
        log_file: append here instead of stderr; falls back to SWARM_MIRROR_LOG_FILE
    """
    level_name = (level or os.environ.get(LEVEL_ENV) or "INFO").upper()
    style = (format_type or os.environ.get(FORMAT_ENV) or "text").lower()
    log_path = log_file or os.environ.get(FILE_ENV) or None

    threshold = logging.getLevelName(level_name)
    if not isinstance(threshold, int):
        threshold = logging.INFO

    handler = _build_handler(log_path)
    handler.setLevel(threshold)
    if style == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(HumanFormatter(colorize=not log_path and sys.stderr.isatty()))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(threshold)
    root.addHandler(handler)

    logging.getLogger(__name__).debug(f"Logging configured: level={level_name}, format={style}, file={log_path}")
