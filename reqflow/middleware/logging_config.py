"""
Structured logging for reqflow.

Worker threads, provider calls and the cache all log through
``logging.getLogger(__name__)`` and attach job/provider context with
``extra={...}``. This module decides how that context is rendered:

- Production: one JSON object per line
- Development / testing: coloured single line with a context suffix
- Level: ``LOG_LEVEL`` from app config, then env
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = (
    "job_id",
    "job_type",
    "project_id",
    "user_id",
    "provider",
    "operation",
    "stage",
    "duration_ms",
    "cache_hit",
    "status",
)

_QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "httpx", "httpcore", "openai", "anthropic")


def record_context(record: logging.LogRecord) -> dict:
    """Return the context fields present on *record*."""
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured line: ``HH:MM:SS LEVEL logger: message (job, provider) [Nms]``."""

    LEVEL_COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _suffix(record: logging.LogRecord) -> str:
        tags = []
        job_id = getattr(record, "job_id", None)
        if job_id:
            tags.append(f"job {job_id}")
        provider = getattr(record, "provider", None)
        if provider:
            tags.append(provider)
        if getattr(record, "cache_hit", None):
            tags.append("cached")
        suffix = f" ({', '.join(tags)})" if tags else ""

        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            suffix += f" [{duration:.0f}ms]"
        return suffix

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{colour}{ts} {record.levelname:<8}{self.RESET} "
            f"{record.name}: {record.getMessage()}{self._suffix(record)}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    testing = app.config.get("TESTING", False)
    structured = not app.config.get("DEBUG", False) and not testing

    level_name = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL") or ("INFO" if structured else "DEBUG")
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info(
            "reqflow logging ready: level=%s format=%s",
            level_name, "json" if structured else "readable",
        )
