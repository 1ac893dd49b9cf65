"""
Structured logging for the reconciliation engine.

Pipeline helpers attach context (invoice id, pipeline step) to each record.
The JSON file formatter lifts that context to top-level keys so a run can be
followed by invoice; the console formatter appends it as a short suffix.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from ap_recon.config import get_config


config = get_config()

# Context keys promoted to the top level of a structured record
CONTEXT_KEYS = ("invoice_id", "step", "action")


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    extra = getattr(record, "extra", None)
    return dict(extra) if isinstance(extra, dict) else {}


class StructuredFormatter(logging.Formatter):
    """Formats log records as JSON lines with pipeline context at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = _context(record)
        for key in CONTEXT_KEYS:
            if context.get(key) is not None:
                log_obj[key] = context.pop(key)
        if context:
            log_obj["context"] = context

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class ConsoleFormatter(logging.Formatter):
    """Plain console lines, suffixed with the invoice being processed."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        invoice_id = _context(record).get("invoice_id")
        return f"{line} | invoice={invoice_id}" if invoice_id else line


def setup_logging(name: str = __name__) -> logging.Logger:
    """Setup and return a configured logger."""
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.LOG_LEVEL))

    # Modules call this at import time; attach handlers only once
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, config.LOG_LEVEL))
    console_handler.setFormatter(ConsoleFormatter(config.LOG_FORMAT))
    logger.addHandler(console_handler)

    file_handler = logging.FileHandler(config.LOG_FILE, delay=True)
    file_handler.setLevel(getattr(logging, config.LOG_LEVEL))
    file_handler.setFormatter(StructuredFormatter())
    logger.addHandler(file_handler)

    return logger


def log_pipeline_action(
    logger: logging.Logger,
    step: str,
    action: str,
    details: Optional[dict] = None,
) -> None:
    """Log a pipeline step; an `invoice_id` in details becomes record context."""
    extra = dict(details or {})
    extra.update(step=step, action=action)

    logger.info(f"[{step}] {action}", extra={"extra": extra})


def log_issue(
    logger: logging.Logger,
    invoice_id: str,
    issue_type: str,
    severity: str,
    description: str,
    dollar_impact: Optional[str] = None,
) -> None:
    """Log a derived invoice issue."""
    extra = {
        "invoice_id": invoice_id,
        "step": "Variance",
        "issue_type": issue_type,
        "severity": severity,
        "description": description,
        "dollar_impact": dollar_impact,
    }
    logger.warning(f"Issue derived: {issue_type} ({severity})", extra={"extra": extra})
