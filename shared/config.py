"""
Shared configuration management for the assessment platform services.
"""

from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field can be overridden through a ``PLATFORM_``-prefixed environment
    variable (``PLATFORM_MAX_RETRIES=5``) or a ``.env`` file. Durations use
    milliseconds to match the settings the services have always exposed.
    """

    model_config = SettingsConfigDict(
        env_prefix="PLATFORM_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Internal services
    auth_service_url: str = Field(default="http://auth-service:5001/api")
    questionnaire_service_url: str = Field(default="http://questionnaire-service:5002/api")
    analysis_service_url: str = Field(default="http://analysis-service:5004/api")
    report_service_url: str = Field(default="http://report-service:5005/api")
    payment_service_url: str = Field(default="http://payment-service:5006/api")

    # Outbound calls
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    retry_backoff: str = Field(default="fixed", pattern="^(fixed|linear|exponential)$")
    connection_timeout_ms: int = Field(default=5000, gt=0)
    keep_alive_timeout_ms: int = Field(default=5000, ge=0)

    # Circuit breaker
    circuit_breaker_threshold: int = Field(default=3, ge=1)
    reset_timeout_ms: int = Field(default=30000, ge=0)
    error_threshold_percentage: int = Field(default=50, ge=0, le=100)
    rolling_window_ms: int = Field(default=10000, gt=0)
    rolling_window_buckets: int = Field(default=10, ge=1)
    volume_threshold: int = Field(default=10, ge=1)

    # Credential validation
    identity_dependency: str = Field(default="auth")
    identity_validate_path: str = Field(default="/auth/validate-token")
    cache_ttl_ms: int = Field(default=300000, gt=0)
    cache_sweep_interval_ms: int = Field(default=900000, gt=0)
    allow_stale_on_circuit_open: bool = Field(default=False)
    stale_grace_period_ms: int = Field(default=300000, ge=0)
    jwt_secret: Optional[str] = Field(default=None)

    def dependency_urls(self) -> Dict[str, str]:
        """Map downstream dependency names to their base URLs."""
        return {
            "auth": self.auth_service_url,
            "questionnaire": self.questionnaire_service_url,
            "analysis": self.analysis_service_url,
            "report": self.report_service_url,
            "payment": self.payment_service_url,
        }


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
