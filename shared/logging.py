"""
Structured logging for the admission pipeline.

Every event carries the service name plus whatever correlation context the
pipeline has bound for the current request: request id, client identity and
authenticated principal.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
client_id_var: ContextVar[Optional[str]] = ContextVar('client_id', default=None)
principal_var: ContextVar[Optional[str]] = ContextVar('principal', default=None)

_CORRELATION_VARS = {
    "request_id": request_id_var,
    "client_id": client_id_var,
    "principal": principal_var,
}

_service_name: Optional[str] = None


def configure_logging(service_name: str, log_level: str = "info", log_format: str = "json") -> None:
    """Configure structlog and the stdlib root logger.

    ``log_format`` is ``"json"`` for machine-readable output or ``"console"``
    for coloured local development output.
    """
    global _service_name
    _service_name = service_name

    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            renderer,
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


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Stamp the configured service name, falling back to the logger prefix."""
    if _service_name:
        event_dict.setdefault("service", _service_name)
    else:
        logger_name = event_dict.get("logger", "")
        if "." in logger_name:
            event_dict["service"] = logger_name.split(".")[0]
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy bound correlation values into the event."""
    for key, var in _CORRELATION_VARS.items():
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind the request id, generating one when the caller sent none."""
    if not request_id:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_client_context(client_id: Optional[str] = None, principal: Optional[str] = None):
    if client_id:
        client_id_var.set(client_id)
    if principal:
        principal_var.set(principal)


def clear_context():
    """Clear all context variables."""
    for var in _CORRELATION_VARS.values():
        var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
