"""Logging setup shared by the engine, the CLI and the web control API.

Everything logs under the ``sweepwatch`` logger. Console output is a single
readable line per record with any sweep context (band, pid, exit code,
attempt) appended; an optional second handler writes JSON lines for log
shippers.

Environment:
    SWEEPWATCH_DEBUG=1        force DEBUG
    SWEEPWATCH_LOG_LEVEL      level name when no level is passed
    SWEEPWATCH_LOG_JSON       JSON-lines file when no path is passed

Usage:
    from sweepwatch.util.logging import get_logger, configure_logging

    configure_logging(level="DEBUG", json_file="/var/log/sweepwatch.jsonl")
    logger = get_logger(__name__)
    logger.info("Sweep process started", extra={"band": "2400 MHz", "pid": 4242})
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO


ROOT = "sweepwatch"
_configured = False

# Fields accepted through extra={}; the first four also show on the console
CONTEXT_FIELDS = ("band", "pid", "exit_code", "attempt", "error_type", "duration_ms", "session")
_CONSOLE_CONTEXT = CONTEXT_FIELDS[:4]


def _record_context(record: logging.LogRecord, fields=CONTEXT_FIELDS) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in fields if getattr(record, key, None) is not None}


def _format_traceback(record: logging.LogRecord) -> str:
    return "".join(traceback.format_exception(*record.exc_info)) if record.exc_info else ""


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        payload.update(_record_context(record))
        tb = _format_traceback(record)
        if tb:
            payload["traceback"] = tb
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    """``[time] LEVEL [module] message (band=.. pid=..)`` with ANSI level colors on a TTY."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True, stream: Optional[TextIO] = None):
        super().__init__()
        stream = stream or sys.stderr
        self.use_color = use_color and hasattr(stream, "isatty") and stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        level = f"{record.levelname:8}"
        if self.use_color and record.levelno in self.COLORS:
            level = f"{self.COLORS[record.levelno]}{level}{self.RESET}"
        module = record.name[len(ROOT) + 1:] if record.name.startswith(ROOT + ".") else record.name
        line = f"[{when}] {level} [{module}] {record.getMessage()}"
        context = _record_context(record, _CONSOLE_CONTEXT)
        if context:
            line += " (" + " ".join(f"{k}={v}" for k, v in context.items()) + ")"
        tb = _format_traceback(record)
        return f"{line}\n{tb}" if tb else line


def _level_from_env() -> str:
    if os.environ.get("SWEEPWATCH_DEBUG", "").strip().lower() in ("1", "true", "yes"):
        return "DEBUG"
    return os.environ.get("SWEEPWATCH_LOG_LEVEL", "INFO")


def configure_logging(
    *,
    level: Optional[str] = None,
    json_file: Optional[str] = None,
    use_color: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """(Re)configure the ``sweepwatch`` logger.

    Safe to call repeatedly; previous handlers are replaced. An unknown
    level name falls back to INFO. A JSON file that cannot be opened is
    reported and skipped.
    """
    global _configured

    numeric = getattr(logging, (level or _level_from_env()).upper(), logging.INFO)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    logger = logging.getLogger(ROOT)
    logger.setLevel(numeric)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()

    stream = stream or sys.stderr
    console = logging.StreamHandler(stream)
    console.setLevel(numeric)
    console.setFormatter(ConsoleFormatter(use_color=use_color, stream=stream))
    logger.addHandler(console)

    json_file = json_file or os.environ.get("SWEEPWATCH_LOG_JSON") or None
    if json_file:
        try:
            jsonl = logging.FileHandler(json_file, mode="a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot open JSON log %s: %s", json_file, exc)
        else:
            jsonl.setLevel(numeric)
            jsonl.setFormatter(JSONFormatter())
            logger.addHandler(jsonl)

    logger.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name`` under the ``sweepwatch`` tree, configuring defaults on first use."""
    if not _configured:
        configure_logging()
    if name == "__main__":
        name = "main"
    if name != ROOT and not name.startswith(ROOT + "."):
        name = f"{ROOT}.{name}"
    return logging.getLogger(name)


def log_exception(
    logger: logging.Logger,
    message: str,
    *,
    error_type: Optional[str] = None,
    **extra: Any,
) -> None:
    """Log the exception being handled, tagged with ``error_type`` and sweep context.

    Call from inside an ``except`` block.
    """
    context = dict(extra)
    if error_type:
        context["error_type"] = error_type
    logger.exception(message, extra=context)
