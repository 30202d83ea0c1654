"""
Shared error handling for the assessment platform services.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class PlatformException(Exception):
    """Base exception for platform services."""

    http_status: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


# Outbound call errors

class ClientError(PlatformException):
    """Base class for failures of an outbound call to a dependency."""

    http_status = 502

    def __init__(self, code: str, dependency: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.dependency = dependency
        super().__init__(code, f"{dependency}: {message}", {"dependency": dependency, **(details or {})})


class CircuitOpenError(ClientError):
    """The circuit breaker rejected the call without attempting any I/O."""

    http_status = 503

    def __init__(self, dependency: str, reason: str = "circuit open", retry_after: Optional[float] = None):
        self.reason = reason
        self.retry_after = retry_after
        details: Dict[str, Any] = {"reason": reason}
        if retry_after is not None:
            details["retry_after"] = round(retry_after, 3)
        super().__init__("CIRCUIT_OPEN", dependency, f"circuit breaker is open ({reason})", details)


class TransportError(ClientError):
    """Network-level failure: connection refused, DNS failure, reset."""

    def __init__(self, dependency: str, message: str = "transport failure", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSPORT_ERROR", dependency, message, details)


class DependencyTimeoutError(ClientError):
    """A single attempt exceeded its timeout."""

    http_status = 504

    def __init__(self, dependency: str, timeout: float, details: Optional[Dict[str, Any]] = None):
        self.timeout = timeout
        super().__init__(
            "DEPENDENCY_TIMEOUT",
            dependency,
            f"request timed out after {timeout:g}s",
            {"timeout": timeout, **(details or {})},
        )


class DownstreamRejectedError(ClientError):
    """The dependency answered with a well-formed non-2xx response."""

    def __init__(self, dependency: str, status_code: int, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(
            "DOWNSTREAM_REJECTED",
            dependency,
            f"responded with HTTP {status_code}",
            {"status_code": status_code},
        )

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


# Authentication errors

class AuthenticationError(PlatformException):
    """Authentication-related errors."""

    http_status = 401

    def __init__(self, code: str = "AUTHENTICATION_ERROR", message: str = "Authentication failed",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class InvalidCredentialError(AuthenticationError):
    """The credential is structurally invalid and was never sent downstream."""

    def __init__(self, message: str = "Invalid credential", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_CREDENTIAL", message, details)


class CredentialRejectedError(AuthenticationError):
    """The identity service rejected the credential."""

    def __init__(self, message: str = "Authentication rejected", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTH_REJECTED", message, details)


class AuthenticationUnavailableError(AuthenticationError):
    """The identity service could not be reached; the caller may retry later."""

    http_status = 503

    def __init__(self, cause: ClientError, message: str = "Authentication temporarily unavailable"):
        self.cause = cause
        details: Dict[str, Any] = {"cause": cause.code, "dependency": cause.dependency}
        retry_after = getattr(cause, "retry_after", None)
        if retry_after is not None:
            details["retry_after"] = round(retry_after, 3)
        super().__init__("AUTH_UNAVAILABLE", message, details)

    @property
    def retry_after(self) -> Optional[float]:
        return getattr(self.cause, "retry_after", None)
