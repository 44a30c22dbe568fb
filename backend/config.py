"""
Recon Core - Configuration Management

Settings for the reconciliation API and the reconcile job, loaded from the
environment (and `.env`) through pydantic-settings.

Reconciliation runs read their defaults from here:
- RECONCILE_APPLY_CONCURRENCY bounds simultaneous decision writes
- RECONCILE_DEADLINE_SECONDS caps the apply phase (0 = no deadline)
- SUGGESTION_LIMIT is the default size of a suggestion list
"""

import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ENVIRONMENTS = ("development", "testing", "staging", "production")

# URL schemes the async engine accepts (plain postgres URLs are switched to asyncpg)
SUPPORTED_URL_SCHEMES = ("postgresql+asyncpg://", "postgresql://", "postgres://", "sqlite+aiosqlite://")

LOCAL_FRONTEND_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


class Settings(BaseSettings):
    """
    Application settings.

    Field names match the environment variables one to one.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="development", description="development, testing, staging or production")
    DEBUG: bool = Field(default=False, description="Force debug mode outside development")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")

    # Storage
    DATABASE_URL: str = Field(default="", description="Async SQLAlchemy URL, e.g. postgresql+asyncpg://...")
    DATABASE_SSL: bool = Field(default=False, description="Require SSL on PostgreSQL connections")

    # Reconciliation runs
    RECONCILE_APPLY_CONCURRENCY: int = Field(default=5, ge=1, le=50)
    RECONCILE_DEADLINE_SECONDS: float = Field(default=30.0, ge=0)
    SUGGESTION_LIMIT: int = Field(default=5, ge=1, le=50)

    # HTTP surface
    CORS_ORIGINS: str = Field(default="", description="Comma-separated allowed origins")
    API_TITLE: str = Field(default="Recon Core API")
    API_VERSION: str = Field(default="1.0.0")

    # Error tracking
    SENTRY_DSN: str = Field(default="")
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1, ge=0, le=1)

    @field_validator("ENVIRONMENT")
    @classmethod
    def _known_environment(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ENVIRONMENTS:
            raise ValueError(f"ENVIRONMENT must be one of {', '.join(ENVIRONMENTS)}")
        return value

    @field_validator("LOG_LEVEL")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {value}")
        return value

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def debug_enabled(self) -> bool:
        return self.DEBUG or self.is_development

    @property
    def has_supported_scheme(self) -> bool:
        return self.DATABASE_URL.startswith(SUPPORTED_URL_SCHEMES)

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Allowed CORS origins, sorted.

        A bare "*" is ignored; outside production the local frontends are added.
        """
        origins = {
            origin.strip() for origin in self.CORS_ORIGINS.split(",")
            if origin.strip() and origin.strip() != "*"
        }
        if not self.is_production:
            origins.update(LOCAL_FRONTEND_ORIGINS)
        return sorted(origins)

    def run_defaults(self) -> Dict[str, Any]:
        """Keyword arguments for ReconciliationService built from these settings."""
        return {
            "apply_concurrency": self.RECONCILE_APPLY_CONCURRENCY,
            "deadline_seconds": self.RECONCILE_DEADLINE_SECONDS or None,
        }

    def validate_production_config(self) -> List[str]:
        """
        Problems that must block a production start.

        DATABASE_URL is checked in every environment; the rest only in production.
        """
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")
        elif not self.has_supported_scheme:
            errors.append("DATABASE_URL must be a PostgreSQL (asyncpg) or sqlite+aiosqlite URL")

        if not self.is_production:
            return errors

        if self.CORS_ORIGINS.strip() == "*":
            errors.append("CORS_ORIGINS cannot be '*' in production")
        if "localhost" in self.DATABASE_URL.lower():
            errors.append("DATABASE_URL cannot point to localhost in production")
        if self.DATABASE_URL.startswith("sqlite"):
            errors.append("SQLite is not supported in production")
        if self.DEBUG:
            errors.append("DEBUG should be False in production")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings for the process.

    Raises:
        ValueError: in production, when validate_production_config() finds problems
    """
    settings = Settings()
    logger.info(f"Environment: {settings.ENVIRONMENT} (debug={settings.debug_enabled})")

    if settings.is_production:
        errors = settings.validate_production_config()
        for error in errors:
            logger.error(f"Configuration error: {error}")
        if errors:
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


def get_cors_config() -> dict:
    """Keyword arguments for Starlette's CORSMiddleware."""
    return {
        "allow_origins": get_settings().cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-Service-Name",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,
    }


def _internal_keys_configured() -> bool:
    return any(
        key.strip()
        for name in ("INTERNAL_API_KEY", "INTERNAL_API_KEYS")
        for key in os.environ.get(name, "").split(",")
    )


def validate_environment(settings: Optional[Settings] = None) -> dict:
    """
    Report configuration health for startup logs and /api/config/status.

    Values are never echoed, only whether each one is set.
    """
    settings = settings or get_settings()
    errors = settings.validate_production_config()
    warnings: List[str] = []

    if not settings.SENTRY_DSN:
        warnings.append("Error tracking disabled")
    if not _internal_keys_configured():
        warnings.append("No internal API keys configured; reconciliation endpoints return 503")
    if settings.RECONCILE_DEADLINE_SECONDS == 0:
        warnings.append("Reconciliation runs have no deadline")

    def marker(value) -> str:
        return "✓ Set" if value else "⚠ Not set"

    return {
        "valid": not errors,
        "environment": settings.ENVIRONMENT,
        "errors": errors,
        "warnings": warnings,
        "variables": {
            "DATABASE_URL": marker(settings.DATABASE_URL),
            "SENTRY_DSN": marker(settings.SENTRY_DSN),
            "INTERNAL_API_KEY": marker(_internal_keys_configured()),
        },
    }
