"""
Configuration management for POS Sync.

Loads settings from the environment (and ``.env``) with pydantic-settings and
exposes typed sub-configurations per concern. Provider credentials are handed
out as explicit ``ProviderConfig`` objects so that OAuth services and adapters
never read process-wide state themselves.
"""

from decimal import Decimal
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pos_sync.utils.exceptions import ConfigurationError
from pos_sync.utils.logger import get_logger


logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("square", "clover")


class ProviderConfig(BaseModel):
    """OAuth client and endpoint settings for one POS provider."""

    provider: str = Field(..., description="Provider identifier")
    client_id: str = Field(..., description="OAuth application id")
    client_secret: str = Field(..., description="OAuth application secret")
    redirect_uri: str = Field(default="", description="OAuth callback URL")
    environment: str = Field(default="sandbox", description="sandbox or production")
    scopes: List[str] = Field(default_factory=list, description="Requested OAuth scopes")
    request_timeout: float = Field(default=30.0, description="Per-request timeout in seconds")

    @field_validator('provider')
    @classmethod
    def validate_provider(cls, v):
        v = v.lower().strip()
        if v not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {v}")
        return v

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        v = v.lower().strip()
        if v not in ("sandbox", "production"):
            raise ValueError("environment must be 'sandbox' or 'production'")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


class RateLimitSettings(BaseModel):
    """Per-Integration request ceilings."""

    requests_per_second: int = Field(default=10, ge=1)
    requests_per_minute: int = Field(default=100, ge=1)


class BatchSettings(BaseModel):
    """Batch processor and retry policy defaults."""

    batch_size: int = Field(default=100, ge=1)
    max_concurrency: int = Field(default=5, ge=1)
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter_ratio: float = Field(default=0.25, ge=0)


class ConflictSettings(BaseModel):
    """Conflict resolution defaults."""

    price_threshold: Decimal = Field(default=Decimal("10.00"), ge=0)


class OAuthSettings(BaseModel):
    """Token lifecycle timings."""

    refresh_margin_seconds: int = Field(default=300, ge=0)
    state_ttl_seconds: int = Field(default=600, ge=1)


class PosSyncConfig(BaseSettings):
    """Main configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(default="sqlite:///./pos_sync.db")
    db_pool_size: int = Field(default=10)
    db_echo: bool = Field(default=False)

    # Broker
    redis_url: str = Field(default="redis://localhost:6379/0")
    celery_broker_url: Optional[str] = Field(default=None)
    celery_result_backend: Optional[str] = Field(default=None)

    # Token encryption
    encryption_master_key: Optional[str] = Field(default=None)
    encryption_secondary_key: Optional[str] = Field(default=None)

    # Square
    square_client_id: Optional[str] = Field(default=None)
    square_client_secret: Optional[str] = Field(default=None)
    square_redirect_uri: str = Field(default="http://localhost:8000/api/v1/integrations/square/callback")
    square_environment: str = Field(default="sandbox")
    square_scopes: str = Field(
        default="ITEMS_READ ITEMS_WRITE INVENTORY_READ INVENTORY_WRITE MERCHANT_PROFILE_READ"
    )

    # Clover
    clover_client_id: Optional[str] = Field(default=None)
    clover_client_secret: Optional[str] = Field(default=None)
    clover_redirect_uri: str = Field(default="http://localhost:8000/api/v1/integrations/clover/callback")
    clover_environment: str = Field(default="sandbox")
    clover_scopes: str = Field(default="")

    # Rate limits
    rate_limit_per_second: int = Field(default=10)
    rate_limit_per_minute: int = Field(default=100)

    # Batching and retry
    batch_size: int = Field(default=100)
    batch_max_concurrency: int = Field(default=5)
    retry_max_retries: int = Field(default=3)
    retry_base_delay: float = Field(default=1.0)
    retry_max_delay: float = Field(default=30.0)
    retry_jitter_ratio: float = Field(default=0.25)

    # Conflicts
    conflict_price_threshold: Decimal = Field(default=Decimal("10.00"))

    # OAuth timings
    token_refresh_margin_seconds: int = Field(default=300)
    oauth_state_ttl_seconds: int = Field(default=600)

    # Timeouts
    request_timeout_seconds: float = Field(default=30.0)
    sync_run_deadline_seconds: Optional[float] = Field(default=None)

    # Application
    environment: str = Field(default="development")
    sentry_dsn: Optional[str] = Field(default=None)
    cors_origins: str = Field(default="*")
    log_level: str = Field(default="INFO")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator('conflict_price_threshold')
    @classmethod
    def validate_threshold(cls, v):
        if v < 0:
            raise ValueError("Conflict price threshold cannot be negative")
        return v

    def provider_config(self, provider: str) -> ProviderConfig:
        """
        Build the explicit provider configuration for one OAuth service/adapter.

        Args:
            provider: Provider identifier

        Returns:
            ProviderConfig

        Raises:
            ConfigurationError: If the provider is unknown or its credentials are missing.
        """
        provider = provider.lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(f"Unsupported provider: {provider}", {"provider": provider})

        client_id = getattr(self, f"{provider}_client_id")
        client_secret = getattr(self, f"{provider}_client_secret")
        if not client_id or not client_secret:
            raise ConfigurationError(
                f"{provider} OAuth credentials are not configured",
                {"provider": provider, "missing": [
                    name for name, value in (("client_id", client_id), ("client_secret", client_secret))
                    if not value
                ]}
            )

        scopes = getattr(self, f"{provider}_scopes") or ""
        return ProviderConfig(
            provider=provider,
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=getattr(self, f"{provider}_redirect_uri"),
            environment=getattr(self, f"{provider}_environment"),
            scopes=scopes.split(),
            request_timeout=self.request_timeout_seconds,
        )

    @property
    def rate_limits(self) -> RateLimitSettings:
        return RateLimitSettings(
            requests_per_second=self.rate_limit_per_second,
            requests_per_minute=self.rate_limit_per_minute,
        )

    @property
    def batch(self) -> BatchSettings:
        return BatchSettings(
            batch_size=self.batch_size,
            max_concurrency=self.batch_max_concurrency,
            max_retries=self.retry_max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter_ratio=self.retry_jitter_ratio,
        )

    @property
    def conflicts(self) -> ConflictSettings:
        return ConflictSettings(price_threshold=self.conflict_price_threshold)

    @property
    def oauth(self) -> OAuthSettings:
        return OAuthSettings(
            refresh_margin_seconds=self.token_refresh_margin_seconds,
            state_ttl_seconds=self.oauth_state_ttl_seconds,
        )

    @property
    def broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url

    @property
    def result_backend(self) -> str:
        return self.celery_result_backend or self.redis_url

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


# Global configuration instance
_config: Optional[PosSyncConfig] = None


def get_config() -> PosSyncConfig:
    """
    Get the global configuration instance.

    Returns:
        PosSyncConfig: Validated configuration instance.

    Raises:
        ConfigurationError: If configuration validation fails.
    """
    global _config

    if _config is None:
        try:
            _config = PosSyncConfig()
        except ValueError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")

    return _config


def reload_config() -> PosSyncConfig:
    """
    Reload configuration from environment variables.

    Returns:
        PosSyncConfig: New validated configuration instance.
    """
    global _config
    _config = None
    return get_config()


def configuration_summary(config: Optional[PosSyncConfig] = None) -> Dict[str, Any]:
    """Sanitized view of the configuration, safe to print or log."""
    config = config or get_config()
    return {
        "database_url": config.database_url.split("@")[-1],
        "providers": {
            provider: {
                "configured": bool(getattr(config, f"{provider}_client_id")
                                   and getattr(config, f"{provider}_client_secret")),
                "environment": getattr(config, f"{provider}_environment"),
            }
            for provider in SUPPORTED_PROVIDERS
        },
        "rate_limits": config.rate_limits.model_dump(),
        "batch": config.batch.model_dump(),
        "conflict_price_threshold": str(config.conflict_price_threshold),
        "has_encryption_key": bool(config.encryption_master_key),
        "sentry_enabled": bool(config.sentry_dsn),
    }
