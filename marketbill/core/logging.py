"""
Structured logging for the billing engine.

- One app logger ("marketbill"); feature modules log on children of it
  (marketbill.billing, marketbill.webhooks, ...) with bracket tags and extra={}.
- Correlation: the HTTP request id, plus billing ids bound for the duration
  of a unit of work (a webhook event, a sweep run) via bind_context().
- Processor secrets (client secrets, signatures, keys) are masked before
  anything is written.
- JSON lines in production, one-line key=value output elsewhere.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

APP_LOGGER = "marketbill"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_bound_ctx_var: ContextVar[Dict[str, object]] = ContextVar("log_context", default={})

# Printed first, in this order, when present
CORRELATION_KEYS = ("request_id", "event_id", "intent_id", "subscription_id", "user_id", "role")

_SECRET_MARKERS = ("secret", "signature", "api_key", "password", "authorization")
_MASK = "***"
_MAX_VALUE_LEN = 500

_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def bind_context(**fields: object) -> Iterator[None]:
    """
    Attach correlation fields to every record logged inside the block.

        with bind_context(event_id=event.event_id, intent_id=event.intent_id):
            ...
    """
    merged = dict(_bound_ctx_var.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _bound_ctx_var.set(merged)
    try:
        yield
    finally:
        _bound_ctx_var.reset(token)


def bound_context() -> Dict[str, object]:
    return dict(_bound_ctx_var.get())


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def scrub(key: str, value: object) -> object:
    """Mask secrets and cap long values. Plain scalars pass through untouched."""
    if is_secret_key(key):
        return _MASK
    if value is None or isinstance(value, (bool, int, float)):
        return value
    try:
        text = value if isinstance(value, str) else str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= _MAX_VALUE_LEN:
        return value if isinstance(value, str) else text
    return text[:_MAX_VALUE_LEN] + "...<truncated>"


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _record_fields(record: logging.LogRecord) -> Dict[str, object]:
    """Correlation keys first, then the record's own extra fields, all scrubbed."""
    raw = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and value is not None
    }
    ordered: Dict[str, object] = {}
    for key in CORRELATION_KEYS:
        if key in raw:
            ordered[key] = raw.pop(key)
    ordered.update(raw)
    return {key: scrub(key, value) for key, value in ordered.items()}


class ContextFilter(logging.Filter):
    """Fill request_id and bound billing ids without overriding explicit extras."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        for key, value in _bound_ctx_var.get().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        fields = " ".join(f"{k}={v}" for k, v in _record_fields(record).items())
        line = f"{ts} {record.levelname:<7} {record.name} {record.getMessage()}"
        if fields:
            line += f" | {fields}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> None:
    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(ContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Our middleware already logs request.complete
    logging.getLogger("uvicorn.access").propagate = False


def log_event(
    level: str,
    msg: str,
    *,
    user_id: Optional[str] = None,
    role: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
    logger_name: str = APP_LOGGER,
) -> None:
    """
    Log a domain event (notification sent, analytics tracked, ...) with its
    payload flattened into the record. Payload keys never shadow the
    correlation fields passed explicitly.
    """
    fields: Dict[str, object] = {}
    if extra:
        fields.update({k: v for k, v in extra.items() if k not in _RESERVED_ATTRS})
    fields.update({"user_id": user_id, "role": role, "event_type": event_type, "error_code": error_code})

    logger = logging.getLogger(logger_name)
    getattr(logger, level, logger.info)(msg, extra={k: v for k, v in fields.items() if v is not None})
