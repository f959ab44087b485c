"""
Logging Configuration with Correlation ID and Tenant Support

This module provides:
1. Context variables for the current request's correlation ID and tenant
2. A logging filter that stamps both onto every record
3. setup_logging() to install the format on the root and uvicorn loggers
"""
import logging
import uuid
from contextvars import ContextVar
from typing import Optional

# Works across awaits and background tasks spawned from a request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current request's correlation ID."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set the correlation ID for the current request.
    If not provided, generates a new one (req-xxxxxxxx).

    Returns the correlation ID that was set.
    """
    if correlation_id is None:
        correlation_id = f"req-{uuid.uuid4().hex[:8]}"
    correlation_id_var.set(correlation_id)
    return correlation_id


def get_tenant_id() -> Optional[str]:
    return tenant_id_var.get()


def set_tenant_id(tenant_id: Optional[str]) -> None:
    """Bind the resolved tenant to the current context (webhooks resolve it late)."""
    tenant_id_var.set(tenant_id)


class CorrelationIdFilter(logging.Filter):
    """
    Adds correlation_id and tenant_id to log records so the formatter can use them.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "no-request"
        record.tenant_id = get_tenant_id() or "-"
        return True


def setup_logging(level: int = logging.INFO) -> None:
    """
    Configure the logging system.

    Format: timestamp | [correlation id] | tenant | logger | level | message
    """
    log_format = "%(asctime)s | [%(correlation_id)s] | %(tenant_id)s | %(name)s | %(levelname)s | %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    formatter = logging.Formatter(log_format, datefmt=date_format)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicate logs
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)

    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(handler)
        uvicorn_logger.propagate = False
