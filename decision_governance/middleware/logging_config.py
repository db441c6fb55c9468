"""
Decision Governance Engine
Logging setup.

Services pass governance context through ``extra=`` (organization_id,
decision_id, conflict_id, edit_request_id ...). Inside a request the
context filter fills in the organisation from the URL and the caller from
X-User when the service did not. Both formatters render that context:

- Development: one coloured line, context as ``[org=3 decision=12]``
- Production: one JSON object per line, context as top-level keys
- Level: LOG_LEVEL env variable
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import has_request_context, request

# Record attribute -> short label in the readable line. Order is render order.
CONTEXT_LABELS = {
    "organization_id": "org",
    "decision_id": "decision",
    "conflict_id": "conflict",
    "edit_request_id": "edit_request",
    "event_type": "event",
    "triggered_by": "trigger",
    "job_name": "job",
    "actor": "actor",
}


def governance_context(record: logging.LogRecord) -> dict:
    """Context attributes present on the record, in CONTEXT_LABELS order."""
    return {
        key: getattr(record, key)
        for key in CONTEXT_LABELS
        if getattr(record, key, None) is not None
    }


class GovernanceContextFilter(logging.Filter):
    """Stamp organization_id and actor from the current request, if any."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_request_context():
            return True
        if getattr(record, "organization_id", None) is None:
            org_id = (request.view_args or {}).get("org_id")
            if org_id is not None:
                record.organization_id = org_id
        if getattr(record, "actor", None) is None:
            actor = request.headers.get("X-User")
            if actor:
                record.actor = actor
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(governance_context(record))
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            entry["duration_ms"] = duration
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color=True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        context = governance_context(record)
        tag = ""
        if context:
            tag = " [" + " ".join(f"{CONTEXT_LABELS[k]}={v}" for k, v in context.items()) + "]"

        line = f"{ts} {level} {record.name}{tag}: {record.getMessage()}"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install one stderr handler on the root logger.

    LOG_LEVEL defaults to DEBUG outside production and INFO in it.
    Production gets JSONFormatter, everything else ReadableFormatter
    (uncoloured under TESTING).
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter(color=not is_testing))
    handler.addFilter(GovernanceContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app runs once per test; replace rather than stack handlers
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
