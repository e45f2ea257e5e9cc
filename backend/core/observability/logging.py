"""JSON structured logging with mandatory fields and PII redaction."""
import json
import logging
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Optional

from backend.core.config import settings

# Thread-local storage for context
_context = threading.local()

_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction."""

    def __init__(self):
        super().__init__()
        # PII patterns
        self.bearer_pattern = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE)
        self.email_pattern = re.compile(r"(\b[\w.+\-]+@[\w\-]+\.[\w.\-]+\b)")
        self.phone_pattern = re.compile(r"(\+?\d[\d \-/()]{6,}\d)")

    def _redact_pii(self, text: str) -> str:
        """Redact PII from text."""
        if not isinstance(text, str):
            return text

        text = self.bearer_pattern.sub(r"\1***", text)
        text = self.email_pattern.sub(self._mask_email, text)
        text = self.phone_pattern.sub(self._mask_phone, text)
        return text

    def _mask_email(self, match) -> str:
        """Mask email: keep first char of user and the domain."""
        email = match.group(1)
        user, domain = email.split("@", 1)
        if len(user) <= 1:
            masked_user = "*"
        else:
            masked_user = user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def _mask_phone(self, match) -> str:
        phone = match.group(1)
        return phone[:2] + "*" * (len(phone) - 2)

    def format(self, record):
        """Format log record as JSON with mandatory fields and PII redaction."""
        trace_id = getattr(_context, "trace_id", None) or "unknown"
        org_id = getattr(_context, "org_id", None) or "unknown"

        log_entry = {
            "trace_id": trace_id,
            "org_id": org_id,
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": self._redact_pii(record.getMessage()),
            "ts_utc": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        # Extra fields from the record, strings redacted
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in log_entry:
                continue
            if isinstance(value, str):
                value = self._redact_pii(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: Optional[str]) -> None:
    """Set trace ID for current thread context."""
    _context.trace_id = trace_id


def set_org_id(org_id: Optional[str]) -> None:
    """Set organization ID for current thread context."""
    _context.org_id = org_id


def init_logging() -> None:
    """Initialize JSON logging on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)


# Convenience logger
logger = get_logger(__name__)
