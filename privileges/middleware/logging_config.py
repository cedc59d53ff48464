"""
Structured logging configuration.

Two renderings of the same records:

- ``JSONFormatter``: one JSON object per line for log aggregation. Fields
  passed via ``extra={...}`` (request, approver, escalation level, job name,
  event type) become top-level keys.
- ``ReadableFormatter``: colored single line for local work, with the same
  context appended as ``[request=12 approver=7 level=MANAGER]``.

Level and format come from ``LOG_LEVEL`` / ``LOG_FORMAT`` in the app config,
falling back to the environment.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# (record attribute, short label used by the readable formatter)
_CONTEXT_FIELDS = (
    ("request_id", "request"),
    ("approver_id", "approver"),
    ("recipient_id", "recipient"),
    ("level", "level"),
    ("job_name", "job"),
    ("event_type", "event"),
)

# HTTP fields set by Flask/werkzeug integrations
_HTTP_FIELDS = ("method", "path", "status", "duration_ms")

_ENGINE_LOGGERS = ("privileges.services", "privileges.blueprints")


def _context(record: logging.LogRecord) -> dict:
    out = {}
    for attr, _ in _CONTEXT_FIELDS:
        val = getattr(record, attr, None)
        if val is not None:
            out[attr] = val
    return out


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def __init__(self, service: str = "privilege-approvals"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service,
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        for key in _HTTP_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Human-readable colored formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",      # cyan
        "INFO": "\033[32m",       # green
        "WARNING": "\033[33m",    # yellow
        "ERROR": "\033[31m",      # red
        "CRITICAL": "\033[35m",   # magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        ctx = _context(record)
        labels = dict(_CONTEXT_FIELDS)
        suffix = " ".join(f"{labels[k]}={v}" for k, v in ctx.items() if k != "event_type")
        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        if suffix:
            line += f" [{suffix}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_level(app, is_prod: bool) -> tuple[str, int]:
    name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL")
            or ("INFO" if is_prod else "DEBUG")).upper()
    return name, getattr(logging, name, logging.INFO)


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    Production (not DEBUG, not TESTING) → JSONFormatter on stderr.
    Otherwise → ReadableFormatter, uncolored when stderr is not a TTY.
    ``LOG_FORMAT`` ("json" / "readable") overrides the choice.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name, level = _resolve_level(app, is_prod)
    fmt = (app.config.get("LOG_FORMAT") or ("json" if is_prod else "readable")).lower()
    if fmt == "json":
        formatter = JSONFormatter()
    else:
        formatter = ReadableFormatter(use_color=sys.stderr.isatty())

    # Single root handler; re-running the factory must not stack handlers
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "flask_limiter"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    for name in _ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(level)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
