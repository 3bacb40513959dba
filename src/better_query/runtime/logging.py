"""
Logging infrastructure.

- Console output: human-readable, colored unless ``NO_COLOR`` is set or
  stdout is not a terminal
- Optional file output: ``<log_dir>/better_query.log`` in JSON Lines format,
  rotated by size

Every module logs through ``logging.getLogger(__name__)``, so all records land
under the ``better_query`` logger configured here. Audit events use the
``better_query.audit`` logger.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

ROOT_LOGGER = "better_query"
LOG_FILE_NAME = "better_query.log"

_NO_COLOR = bool(os.environ.get("NO_COLOR")) or not sys.stdout.isatty()


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "" if _NO_COLOR else "\033[0m"
    DIM = "" if _NO_COLOR else "\033[2m"
    DEBUG = "" if _NO_COLOR else "\033[36m"
    INFO = "" if _NO_COLOR else "\033[32m"
    WARNING = "" if _NO_COLOR else "\033[33m"
    ERROR = "" if _NO_COLOR else "\033[31m"
    CRITICAL = "" if _NO_COLOR else "\033[35m"
    COMPONENT = "" if _NO_COLOR else "\033[34m"


def _component(record: logging.LogRecord) -> str:
    component = getattr(record, "component", None)
    if component:
        return str(component)
    # better_query.runtime.pipeline -> pipeline
    return record.name.rsplit(".", 1)[-1]


class JSONLFormatter(logging.Formatter):
    """
    One JSON object per line.

    Fields: ``timestamp`` (ISO 8601, UTC), ``level``, ``logger``,
    ``component``, ``message``, plus ``context``/``audit`` when passed via
    ``extra``, ``source`` for warnings and above, and ``exception``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "component": _component(record),
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        audit = getattr(record, "audit", None)
        if audit:
            entry["audit"] = json.loads(audit) if isinstance(audit, str) else audit

        if record.levelno >= logging.WARNING:
            entry["source"] = {"file": record.pathname, "line": record.lineno, "function": record.funcName}

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DEBUG,
        logging.INFO: Colors.INFO,
        logging.WARNING: Colors.WARNING,
        logging.ERROR: Colors.ERROR,
        logging.CRITICAL: Colors.CRITICAL,
    }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        component = _component(record)
        prefix = f"{Colors.DIM}{timestamp}{Colors.RESET} {Colors.COMPONENT}[{component}]{Colors.RESET}"

        if record.levelno != logging.INFO:
            color = self.LEVEL_COLORS.get(record.levelno, "")
            prefix = f"{prefix} {color}{record.levelname}{Colors.RESET}:"

        message = f"{prefix} {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(
    level: int | str = logging.INFO,
    log_dir: Path | str | None = None,
    json_lines: bool = True,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure the ``better_query`` logger.

    Args:
        level: Minimum level (int or name such as "DEBUG")
        log_dir: Directory for the rotating log file; console only when None
        json_lines: Write the file in JSONL (True) or console format (False)
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The configured root logger of the package
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ConsoleFormatter())
    console.setLevel(level)
    root.addHandler(console)

    if log_dir is not None:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            directory / LOG_FILE_NAME,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONLFormatter() if json_lines else ConsoleFormatter())
        file_handler.setLevel(level)
        root.addHandler(file_handler)

    root.propagate = False
    root.debug(f"Logging initialized (level={logging.getLevelName(level)}, log_dir={log_dir})")
    return root


def get_logger(component: str) -> logging.Logger:
    """
    Get a logger for a named component, e.g. ``get_logger("migrations")``.

    Records carry ``component`` so both formatters can tag them.
    """
    logger = logging.getLogger(f"{ROOT_LOGGER}.{component.lower().replace(' ', '_')}")
    if not any(isinstance(f, _ComponentFilter) for f in logger.filters):
        logger.addFilter(_ComponentFilter(component))
    return logger


class _ComponentFilter(logging.Filter):
    def __init__(self, component: str):
        super().__init__()
        self.component = component

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "component"):
            record.component = self.component
        return True


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    **kwargs: Any,
) -> None:
    """Log a message with structured context (rendered under ``context`` in JSONL)."""
    extra = {"context": {**(context or {}), **kwargs}} if (context or kwargs) else {}
    logger.log(level, message, extra=extra)
