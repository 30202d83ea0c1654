"""
Credential validation.

``CredentialValidator.validate`` turns a bearer credential into an
``Identity``:

1. local checks reject malformed or expired credentials without any I/O;
2. a fresh cache entry is returned directly;
3. otherwise one validation per credential runs against the identity
   service, and concurrent callers for the same credential share its outcome.

When the identity service's circuit is open and stale serving is enabled,
an expired cache entry inside the grace period is returned marked stale.
"""

import re
import time
from typing import Any, Callable, Dict, Optional

from jose import jwt
from jose.exceptions import JWTError

from shared.credential_cache import CredentialCache, Identity, credential_key
from shared.errors import (
    AuthenticationUnavailableError,
    CircuitOpenError,
    ClientError,
    CredentialRejectedError,
    DownstreamRejectedError,
    InvalidCredentialError,
)
from shared.logging import bind_credential, get_logger, request_id_var
from shared.resilient_client import RequestSpec, ResilientClient
from shared.single_flight import SingleFlight

MAX_CREDENTIAL_LENGTH = 8192
BEARER_PREFIX = re.compile(r"^bearer(?:\s+|$)", re.IGNORECASE)


def normalize_credential(raw: Optional[str]) -> str:
    """Strip an optional ``Bearer`` prefix and reject unusable credentials."""
    if raw is None:
        raise InvalidCredentialError("Credential missing")

    credential = BEARER_PREFIX.sub("", raw.strip(), count=1).strip()

    if not credential:
        raise InvalidCredentialError("Credential missing")
    if len(credential) > MAX_CREDENTIAL_LENGTH:
        raise InvalidCredentialError("Credential too long", {"max_length": MAX_CREDENTIAL_LENGTH})
    if not credential.isprintable() or any(ch.isspace() for ch in credential):
        raise InvalidCredentialError("Credential contains invalid characters")
    return credential


def check_token_claims(credential: str, jwt_secret: Optional[str] = None,
                       now: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """Decode a JWT-shaped credential and check its expiry.

    Opaque credentials (anything that is not three dot-separated segments)
    are left to the identity service and yield ``None``.
    """
    if credential.count(".") != 2:
        return None

    try:
        if jwt_secret:
            claims = jwt.decode(
                credential,
                jwt_secret,
                algorithms=["HS256"],
                options={"verify_aud": False, "verify_exp": False},
            )
        else:
            claims = jwt.get_unverified_claims(credential)
    except JWTError as exc:
        raise InvalidCredentialError("Malformed credential", {"reason": str(exc)}) from exc

    exp = claims.get("exp")
    if exp is not None:
        try:
            expires_at = float(exp)
        except (TypeError, ValueError) as exc:
            raise InvalidCredentialError("Malformed credential", {"reason": "invalid exp claim"}) from exc
        current = time.time() if now is None else now
        if expires_at <= current:
            raise InvalidCredentialError("Credential expired")
    return claims


def parse_identity(body: Any) -> Identity:
    """Build an ``Identity`` from the identity service's response body."""
    if not isinstance(body, dict):
        raise CredentialRejectedError("Malformed identity response")
    if body.get("success") is False or body.get("valid") is False:
        raise CredentialRejectedError(_error_message(body))

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    if data.get("valid") is False:
        raise CredentialRejectedError(_error_message(body))

    user = data.get("user") or body.get("user") or body.get("user_info")
    if not isinstance(user, dict):
        raise CredentialRejectedError("Identity response carries no user")

    user_id = user.get("id", user.get("user_id"))
    if user_id is None or user_id == "":
        raise CredentialRejectedError("Identity response carries no user id")

    claims = {key: value for key, value in user.items() if key not in ("id", "user_id", "email", "role")}
    # Services disagree on numeric vs string ids; normalise to string
    return Identity(id=str(user_id), email=user.get("email"), role=user.get("role"), claims=claims)


def _error_message(body: Dict[str, Any]) -> str:
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(body.get("message"), str):
        return body["message"]
    return "Authentication rejected"


class CredentialValidator:
    """Validates credentials against the identity service with caching and coalescing."""

    def __init__(self,
                 client: ResilientClient,
                 cache: CredentialCache,
                 gate: Optional[SingleFlight] = None,
                 dependency: str = "auth",
                 validate_path: str = "/auth/validate-token",
                 allow_stale_on_circuit_open: bool = False,
                 stale_grace_period: float = 300.0,
                 jwt_secret: Optional[str] = None,
                 timeout: Optional[float] = None,
                 wall_clock: Callable[[], float] = time.time,
                 metrics=None):
        self.client = client
        self.cache = cache
        self.gate = gate or SingleFlight("credential_validation")
        self.dependency = dependency
        self.validate_path = validate_path
        self.allow_stale_on_circuit_open = allow_stale_on_circuit_open
        self.stale_grace_period = stale_grace_period
        self.jwt_secret = jwt_secret
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("auth.credential_validator")
        self._wall_clock = wall_clock

        if allow_stale_on_circuit_open:
            # get_fresh evicts entries past ttl + retention
            cache.extend_stale_retention(stale_grace_period)

    @classmethod
    def from_config(cls, config, client: ResilientClient, cache: CredentialCache,
                    gate: Optional[SingleFlight] = None, metrics=None) -> "CredentialValidator":
        return cls(
            client=client,
            cache=cache,
            gate=gate,
            dependency=config.identity_dependency,
            validate_path=config.identity_validate_path,
            allow_stale_on_circuit_open=config.allow_stale_on_circuit_open,
            stale_grace_period=config.stale_grace_period_ms / 1000.0,
            jwt_secret=config.jwt_secret,
            metrics=metrics,
        )

    async def validate(self, credential: Optional[str]) -> Identity:
        """Return the identity behind ``credential``.

        Raises ``InvalidCredentialError`` for malformed or expired credentials,
        ``CredentialRejectedError`` when the identity service rejects it and
        ``AuthenticationUnavailableError`` when it cannot be reached.
        """
        try:
            token = normalize_credential(credential)
            check_token_claims(token, self.jwt_secret, now=self._wall_clock())
        except InvalidCredentialError as exc:
            self.logger.warning("Credential failed local checks", reason=exc.message)
            self._record("invalid")
            raise

        with bind_credential(token):
            identity = self.cache.get_fresh(token)
            if identity is not None:
                self._record("cache_hit")
                return identity

            key = credential_key(token)
            if self.gate.is_pending(key):
                self.logger.debug("Joining in-flight validation")
                if self.metrics is not None:
                    self.metrics.record_coalesced_validation()

            try:
                return await self.gate.do(key, lambda: self._validate_remote(token))
            except AuthenticationUnavailableError as exc:
                stale = self._stale_fallback(token, exc)
                if stale is None:
                    raise
                return stale

    async def _validate_remote(self, token: str) -> Identity:
        """Call the identity service; runs once per credential per flight."""
        headers = {"Authorization": f"Bearer {token}"}
        request_id = request_id_var.get()
        if request_id:
            headers["X-Request-ID"] = request_id

        spec = RequestSpec(
            "POST",
            self.validate_path,
            headers=headers,
            timeout=self.timeout,
            # Validation has no side effects
            idempotent=True,
        )

        try:
            response = await self.client.call(self.dependency, spec)
        except DownstreamRejectedError as exc:
            if exc.is_server_error:
                self._record("unavailable")
                raise AuthenticationUnavailableError(exc) from exc
            self.logger.info(
                "Credential rejected by identity service",
                status_code=exc.status_code
            )
            self._record("rejected")
            message = _error_message(exc.body) if isinstance(exc.body, dict) else "Authentication rejected"
            raise CredentialRejectedError(message, {"status_code": exc.status_code}) from exc
        except ClientError as exc:
            self.logger.warning(
                "Identity service unavailable",
                error_code=exc.code,
                error=exc.message
            )
            self._record("unavailable")
            raise AuthenticationUnavailableError(exc) from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        try:
            identity = parse_identity(body)
        except CredentialRejectedError:
            self._record("rejected")
            raise

        self.cache.put(token, identity)
        self._record("valid")
        self.logger.info("Credential validated", user_id=identity.id)
        return identity

    def _stale_fallback(self, token: str, exc: AuthenticationUnavailableError) -> Optional[Identity]:
        if not self.allow_stale_on_circuit_open or not isinstance(exc.cause, CircuitOpenError):
            return None

        identity = self.cache.get_stale(token, self.stale_grace_period)
        if identity is None:
            return None

        self.logger.warning(
            "Serving stale identity while identity service circuit is open",
            user_id=identity.id,
            stale=identity.stale
        )
        self._record("stale" if identity.stale else "cache_hit")
        return identity

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_validation(outcome)
