"""
Shared logging configuration for the MP Session Broker.

Every log line is a JSON object carrying the service name and the correlation
context of the current request (request id, internal user, masked session
key). Upstream credentials never reach the output: values under credential
keys are masked by a processor before rendering.
"""

import sys
import structlog
import logging
import uuid
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
session_key_var: ContextVar[Optional[str]] = ContextVar('session_key', default=None)

# Event keys whose values are credentials
CREDENTIAL_KEYS = frozenset({"cookie", "cookies", "token", "upstream_token", "session_key", "auth_key"})


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            ServiceContext(service_name),
            add_correlation_context,
            redact_credentials,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


class ServiceContext:
    """Stamps the owning service and component on each event."""

    def __init__(self, service_name: str):
        self.service_name = service_name

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", self.service_name)
        logger_name = event_dict.get("logger", "")
        if "." in logger_name:
            event_dict["component"] = logger_name.split(".", 1)[1]
        return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add correlation context to log events."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    user_id = user_id_var.get()
    if user_id:
        event_dict["user_id"] = user_id

    session_key = session_key_var.get()
    if session_key and "session_key" not in event_dict:
        event_dict["session_key"] = session_key

    return event_dict


def redact_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential values that were logged by mistake."""
    for key in CREDENTIAL_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and not value.endswith("..."):
            event_dict[key] = mask_key(value)
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None):
    """Set user context in logging."""
    if user_id:
        user_id_var.set(user_id)


def set_session_context(session_key: Optional[str] = None):
    """Attach the (masked) session key of the current request."""
    if session_key:
        session_key_var.set(mask_key(session_key))


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    user_id_var.set(None)
    session_key_var.set(None)


def mask_key(value: Optional[str]) -> Optional[str]:
    """Shorten an opaque credential for log output."""
    if not value:
        return value
    return value[:8] + "..."


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
