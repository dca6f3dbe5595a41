"""
Structured logging for the request security layer.

Every event is rendered as one JSON line carrying the service, the engine
that emitted it (``security.csrf`` -> ``component: csrf``), and the request
and session correlation ids. Token material and secrets are masked before
rendering, including inside nested ``details`` mappings.
"""

import hashlib
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)

# Event keys whose values are masked wherever they appear.
SENSITIVE_KEYS = frozenset({"token", "csrf_token", "secret", "csrf_secret", "password", "cookie", "set-cookie"})

_service_defaults: Dict[str, Any] = {}


def configure_logging(service_name: str, log_level: str = "info", environment: Optional[str] = None) -> None:
    """Configure structlog and the stdlib root logger for a service."""
    _service_defaults.clear()
    _service_defaults["service"] = service_name
    if environment:
        _service_defaults["environment"] = environment

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_context,
            add_correlation_context,
            mask_sensitive_values,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Stamp service defaults and the emitting component."""
    for key, value in _service_defaults.items():
        event_dict.setdefault(key, value)

    _, _, component = event_dict.get("logger", "").partition(".")
    if component:
        event_dict.setdefault("component", component)
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    session_id = session_id_var.get()
    if session_id and "session_id" not in event_dict:
        event_dict["session_id"] = session_id
    return event_dict


def fingerprint(value: str) -> str:
    """Short stable digest so masked values can still be correlated."""
    return "sha256:" + hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _mask(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: (fingerprint(str(item)) if str(key).lower() in SENSITIVE_KEYS and item else _mask(item))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_mask(item) for item in value]
    return value


def mask_sensitive_values(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Replace token and secret values with a fingerprint."""
    return _mask(event_dict)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request id for the current context, generating one if absent."""
    if not request_id:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_session_context(session_id: Optional[str] = None) -> None:
    if session_id:
        session_id_var.set(session_id)


def clear_context() -> None:
    request_id_var.set(None)
    session_id_var.set(None)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger; name it ``<service>.<component>``."""
    return structlog.get_logger(name)
