"""JSON logs with payment secrets and customer contact details removed.

Per-request fields (request id, caller role, route) live in ``LOG_CONTEXT``
and are merged into every line emitted while the request runs.
"""

import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict

# Applied in order: credentials before contact details.
_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+"), "[REDACTED_SECRET]"),
    (re.compile(r"\b(?:pi|seti)_[A-Za-z0-9]+_secret_[A-Za-z0-9]+"), "[REDACTED_SECRET]"),
    (re.compile(r"\bpm_[A-Za-z0-9_]+"), "[REDACTED_PAYMENT_METHOD]"),
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[REDACTED_EMAIL]"),
    (re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"), "[REDACTED_PHONE]"),
    (re.compile(r"(?i)\bauthorization\s*[:=]\s*[^\s]+"), "authorization=[REDACTED_TOKEN]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"), "Bearer [REDACTED_TOKEN]"),
)

# Whole values dropped by key: guest contact and address blocks, and card or API credentials.
PII_KEYS = frozenset({"phone", "email", "guest", "guest_email", "service_address"})
SENSITIVE_KEYS = PII_KEYS | frozenset(
    {
        "authorization",
        "token",
        "metrics_token",
        "client_secret",
        "stripe_secret_key",
        "payment_method",
        "password",
    }
)

# Never more verbose than WARNING.
_QUIET_LOGGERS = ("stripe", "sqlalchemy.engine", "aiosqlite")

LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("log_context", default={})
_LOG_RECORD_ATTRS = frozenset(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__)


def redact_pii(value: str) -> str:
    for pattern, replacement in _REDACTIONS:
        value = pattern.sub(replacement, value)
    return value


def _sanitize_value(value: Any, key: str | None = None) -> Any:
    if key is not None and key.lower() in SENSITIVE_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_pii(value)
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_value(item) for item in value]
    if isinstance(value, dict):
        return {item_key: _sanitize_value(item_value, str(item_key)) for item_key, item_value in value.items()}
    return value


def update_log_context(**kwargs: Any) -> dict[str, Any]:
    merged = {**LOG_CONTEXT.get({}), **{key: value for key, value in kwargs.items() if value is not None}}
    LOG_CONTEXT.set(merged)
    return merged


def clear_log_context() -> None:
    LOG_CONTEXT.set({})


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Fields passed through ``extra=``, with the nested ``{"extra": {...}}`` form flattened."""
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _LOG_RECORD_ATTRS and not key.startswith("_")
    }
    nested = fields.pop("extra", None)
    if isinstance(nested, dict):
        fields.update(nested)
    return fields


class RedactingJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_pii(record.getMessage()),
        }
        payload.update(_sanitize_value(LOG_CONTEXT.get({})))
        payload.update(_sanitize_value(_record_fields(record)))
        if record.exc_info and record.exc_info[0] is not None:
            payload.setdefault("error_type", record.exc_info[0].__name__)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
