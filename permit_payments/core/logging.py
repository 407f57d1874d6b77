"""
Structured Logging Infrastructure

Every record carries the request/task correlation id and, inside
``payment_log_context``, the identifiers of the payment being worked on, so
one intent can be followed across webhook, recovery and reconciliation logs.
Payment data that must not reach the logs goes through ``mask_email`` /
``mask_secret`` first.
"""
import logging
import json
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
payment_context_var: ContextVar[dict[str, Any]] = ContextVar("payment_context", default={})


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def __init__(self, app_name: str = "permit-payments") -> None:
        super().__init__()
        self._app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "app": self._app_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id
        payment = payment_context_var.get()
        if payment:
            entry["payment"] = payment
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept an ``extra_data`` dict"""

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, extra_data: dict[str, Any] | None = None):
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


class ContextFilter(logging.Filter):
    """Adds correlation_id and payment ids to records for the text format"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        payment = payment_context_var.get()
        record.payment = " ".join(f"{k}={v}" for k, v in payment.items()) or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "permit-payments"
) -> None:
    """
    Configure root logging for the API and the Celery workers.

    Args:
        level: Logging level name
        json_format: JSON records (production) instead of one text line per record
        app_name: Application name stamped on every JSON record
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter(app_name=app_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] [%(payment)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        handler.addFilter(ContextFilter())
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation id for the current request or task (generated when omitted)"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation id; one is generated and kept if none was set"""
    cid = correlation_id_var.get()
    if not cid:
        cid = set_correlation_id()
    return cid


@contextmanager
def payment_log_context(**ids: Any) -> Iterator[dict[str, Any]]:
    """Attach payment identifiers (application_id, payment_intent_id, event_id) to every record in the block."""
    merged = {**payment_context_var.get(), **{k: v for k, v in ids.items() if v is not None}}
    token = payment_context_var.set(merged)
    try:
        yield merged
    finally:
        payment_context_var.reset(token)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore


def mask_email(email: str | None) -> str | None:
    """j***@example.com"""
    if not email:
        return email
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def mask_secret(value: str | None, visible: int = 4) -> str | None:
    """Keep the last ``visible`` characters of a token, fingerprint or client secret."""
    if not value:
        return value
    if len(value) <= visible:
        return "****"
    return "****" + value[-visible:]


def log_async_operation(operation_name: str):
    """Log start, completion and failure of a provider call with its duration"""
    def decorator(func):
        op_logger = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.monotonic()
            op_logger.debug(f"Starting {operation_name}", extra_data={"operation": operation_name})
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                op_logger.warning(
                    f"Failed {operation_name}: {type(e).__name__}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": round(time.monotonic() - start, 4),
                        "error": str(e),
                    },
                )
                raise
            op_logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": round(time.monotonic() - start, 4),
                },
            )
            return result

        return wrapper
    return decorator
