"""Application settings loaded from environment variables.

Environment Configuration:
    CHORUS_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: SQLAlchemy connection string (required)
    CHORUS_INTERNAL_SECRET: Internal API secret (required in staging/prod)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (stream store, rate limits, worker broker)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)

Auth Configuration (optional; without it every caller is anonymous):
    AUTH_JWKS_URL: Full URL to the identity provider JWKS endpoint
    AUTH_ISSUER: Expected JWT issuer (trailing slash stripped)
    AUTH_AUDIENCES: Comma-separated list of allowed audiences

Turn Configuration:
    TURN_TIMEOUT_S, THREAD_WINDOW, MAX_INPUT_TOKENS, MAX_TOOL_STEPS,
    ANONYMOUS_CREDITS, ANONYMOUS_RPM_LIMIT, STREAM_TTL_S,
    STREAM_EXPIRE_AFTER_S, RESUME_RECENCY_S, FOLLOWUP_TIMEOUT_S,
    SWEEP_STALE_AFTER_S
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - DATABASE_URL is always required
    - CHORUS_INTERNAL_SECRET is required in staging and prod only
    - AUTH_JWKS_URL and AUTH_ISSUER must be set together
    """

    chorus_env: Environment = Field(default=Environment.LOCAL, alias="CHORUS_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]
    chorus_internal_secret: str | None = Field(default=None, alias="CHORUS_INTERNAL_SECRET")

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    # Bearer token verification
    auth_jwks_url: str | None = Field(default=None, alias="AUTH_JWKS_URL")
    auth_issuer: str | None = Field(default=None, alias="AUTH_ISSUER")
    auth_audiences: str | None = Field(default=None, alias="AUTH_AUDIENCES")

    # Provider keys and flags
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    tavily_api_key: str | None = Field(default=None, alias="TAVILY_API_KEY")
    enable_openai: bool = Field(default=True, alias="ENABLE_OPENAI")
    enable_anthropic: bool = Field(default=True, alias="ENABLE_ANTHROPIC")

    # Turn limits
    turn_timeout_s: float = Field(default=290.0, alias="TURN_TIMEOUT_S")
    thread_window: int = Field(default=5, alias="THREAD_WINDOW")
    max_input_tokens: int = Field(default=50_000, alias="MAX_INPUT_TOKENS")
    max_tool_steps: int = Field(default=5, alias="MAX_TOOL_STEPS")
    followup_timeout_s: float = Field(default=10.0, alias="FOLLOWUP_TIMEOUT_S")

    # Anonymous sessions
    anonymous_credits: int = Field(default=10, alias="ANONYMOUS_CREDITS")
    anonymous_rpm_limit: int = Field(default=10, alias="ANONYMOUS_RPM_LIMIT")

    # Resumable streams
    stream_ttl_s: int = Field(default=600, alias="STREAM_TTL_S")
    stream_expire_after_s: int = Field(default=300, alias="STREAM_EXPIRE_AFTER_S")
    resume_recency_s: float = Field(default=15.0, alias="RESUME_RECENCY_S")

    # Sweeper
    sweep_stale_after_s: int = Field(default=900, alias="SWEEP_STALE_AFTER_S")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure environment-dependent settings are consistent."""
        if bool(self.auth_jwks_url) != bool(self.auth_issuer):
            raise ValueError("AUTH_JWKS_URL and AUTH_ISSUER must be configured together")

        if self.chorus_env in (Environment.STAGING, Environment.PROD):
            if not self.chorus_internal_secret:
                raise ValueError(
                    f"CHORUS_INTERNAL_SECRET is required for CHORUS_ENV={self.chorus_env.value}"
                )

        if self.thread_window < 1:
            raise ValueError("THREAD_WINDOW must be at least 1")

        return self

    @property
    def requires_internal_header(self) -> bool:
        """Whether requests must include the internal secret header."""
        return self.chorus_env in (Environment.STAGING, Environment.PROD)

    @property
    def auth_enabled(self) -> bool:
        """Whether bearer tokens can be verified."""
        return bool(self.auth_jwks_url)

    @property
    def audience_list(self) -> list[str]:
        """Parse comma-separated audiences into a list."""
        if self.auth_audiences:
            return [a.strip() for a in self.auth_audiences.split(",") if a.strip()]
        return []

    @property
    def normalized_issuer(self) -> str | None:
        """Return issuer with trailing slash stripped."""
        if self.auth_issuer:
            return self.auth_issuer.rstrip("/")
        return None

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
