"""
Authentication boundary for service routes.
"""

import math
from typing import Dict, Optional

from fastapi import HTTPException, Request

from shared.credential_cache import Identity
from shared.credential_validator import CredentialValidator
from shared.errors import AuthenticationError, AuthenticationUnavailableError
from shared.logging import get_logger, set_user_context

# Methods that may be served with a stale identity
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

DEFAULT_RETRY_AFTER_SECONDS = 5


class AuthMiddleware:
    """Turns bearer credentials into identities, or HTTP 401 / 503 responses."""

    def __init__(self, validator: CredentialValidator):
        self.validator = validator
        self.logger = get_logger("auth.middleware")

    async def authenticate_request(self, request: Request) -> Identity:
        """Authenticate incoming request with its bearer credential."""
        auth_header = request.headers.get("Authorization")
        if not auth_header:
            raise HTTPException(
                status_code=401,
                detail={"code": "AUTH_REQUIRED", "message": "Authorization header required"},
                headers={"WWW-Authenticate": "Bearer"}
            )

        if auth_header[:7].lower() != "bearer ":
            raise HTTPException(
                status_code=401,
                detail={"code": "AUTH_REQUIRED", "message": "Invalid authorization header format"},
                headers={"WWW-Authenticate": "Bearer"}
            )

        try:
            identity = await self.validator.validate(auth_header)
        except AuthenticationUnavailableError as e:
            self.logger.warning(
                "Authentication unavailable",
                cause=e.cause.code,
                dependency=e.cause.dependency
            )
            raise HTTPException(
                status_code=503,
                detail={
                    "code": e.code,
                    "message": "Authentication temporarily unavailable",
                    "retryable": True
                },
                headers=self._retry_after_headers(e.retry_after)
            )
        except AuthenticationError as e:
            self.logger.info("Authentication rejected", code=e.code, reason=e.message)
            raise HTTPException(
                status_code=401,
                detail={"code": e.code, "message": "Authentication rejected", "reason": e.message},
                headers={"WWW-Authenticate": "Bearer"}
            )

        if identity.stale and request.method.upper() not in SAFE_METHODS:
            self.logger.warning(
                "Refusing mutating request with stale identity",
                user_id=identity.id,
                method=request.method
            )
            raise HTTPException(
                status_code=503,
                detail={
                    "code": "AUTH_DEGRADED",
                    "message": "Authentication degraded, only read requests are accepted",
                    "retryable": True
                },
                headers=self._retry_after_headers(None)
            )

        request.state.identity = identity
        set_user_context(identity.id)
        self.logger.debug("Request authenticated", user_id=identity.id, stale=identity.stale)
        return identity

    async def __call__(self, request: Request) -> Identity:
        """FastAPI dependency: ``Depends(auth_middleware)``."""
        return await self.authenticate_request(request)

    @staticmethod
    def _retry_after_headers(retry_after: Optional[float]) -> Dict[str, str]:
        seconds = DEFAULT_RETRY_AFTER_SECONDS if retry_after is None else max(1, math.ceil(retry_after))
        return {"Retry-After": str(seconds)}
