"""
Shared logging configuration for the assessment platform services.

Every event carries the service name and, when set for the current task,
the request id, the authenticated user, the fingerprint of the credential
being validated and the dependency being called. Raw credentials never
reach the renderer.
"""

import hashlib
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
credential_var: ContextVar[Optional[str]] = ContextVar('credential', default=None)
dependency_var: ContextVar[Optional[str]] = ContextVar('dependency', default=None)

SENSITIVE_KEYS = frozenset({"authorization", "token", "credential", "password", "secret", "jwt_secret"})
REDACTED = "[redacted]"


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
            redact_secrets,
            add_timestamp,
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
    """Stamp the owning service and the emitting component on each event."""

    def __init__(self, service_name: str):
        self.service_name = service_name

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", self.service_name)
        # Logger names are "<area>.<component>", e.g. "auth.credential_cache"
        logger_name = event_dict.get("logger", "")
        if "." in logger_name:
            event_dict.setdefault("component", logger_name.split(".", 1)[1])
        return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request, user, credential and dependency correlation to log events."""
    for key, var in (
        ("request_id", request_id_var),
        ("user_id", user_id_var),
        ("credential", credential_var),
        ("dependency", dependency_var),
    ):
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value

    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask values under credential-bearing keys unless already fingerprinted."""
    for key, value in event_dict.items():
        if key.lower() not in SENSITIVE_KEYS or not isinstance(value, str):
            continue
        if key == "credential" and _is_fingerprint(value):
            continue
        event_dict[key] = REDACTED
    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
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


@contextmanager
def bind_credential(credential: str) -> Iterator[str]:
    """Correlate log events with a credential's fingerprint for the block."""
    value = fingerprint(credential)
    token = credential_var.set(value)
    try:
        yield value
    finally:
        credential_var.reset(token)


@contextmanager
def bind_dependency(name: str) -> Iterator[None]:
    """Correlate log events with the downstream dependency being called."""
    token = dependency_var.set(name)
    try:
        yield
    finally:
        dependency_var.reset(token)


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    user_id_var.set(None)
    credential_var.set(None)
    dependency_var.set(None)


FINGERPRINT_LENGTH = 12


def fingerprint(secret: str, length: int = FINGERPRINT_LENGTH) -> str:
    """Short, non-reversible fingerprint of a credential for log lines."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:length]


def _is_fingerprint(value: str) -> bool:
    return len(value) == FINGERPRINT_LENGTH and all(ch in "0123456789abcdef" for ch in value)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
