"""
Reconciliation Engine - Configuration Management

Centralized configuration for environment variables, CORS, and run-pipeline settings.
This module ensures:
- No hardcoded secrets
- No missing required variables
- Environment-specific settings (dev/staging/prod)
- Secure defaults for the reconciliation pipeline
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (required, postgresql+asyncpg://...)"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== RECONCILIATION PIPELINE ====================
    RECON_MAX_REJECTION_RATIO: float = Field(
        default=0.05,
        description="Share of rejected body records above which a file fails with SchemaMismatch"
    )
    RECON_RUN_TIMEOUT_SECONDS: int = Field(
        default=900,
        description="Maximum processing duration of a single run before it is failed with Timeout"
    )
    RECON_WORKER_POOL_SIZE: int = Field(
        default=4,
        description="Number of runs processed concurrently"
    )
    RECON_SCHEDULER_ENABLED: bool = Field(
        default=False,
        description="Start the delivery-window scheduler with the API process"
    )
    RECON_SCHEDULER_POLL_SECONDS: int = Field(
        default=60,
        description="Seconds between delivery scheduler ticks"
    )
    RECON_DEFAULT_TIMEZONE: str = Field(
        default="Africa/Johannesburg",
        description="Timezone applied to naive supplier timestamps"
    )
    PLATFORM_LEDGER_VIEW: str = Field(
        default="public.platform_vas_transactions",
        description="Read-only view exposing the platform's supplier transactions"
    )
    REPORTS_MAX_ROWS: int = Field(
        default=50000,
        description="Maximum number of match rows exported in a report"
    )

    # ==================== ALERTING ====================
    ALERT_WEBHOOK_URL: str = Field(
        default="",
        description="Notification collaborator endpoint receiving AlertRequest payloads"
    )
    ALERT_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="HTTP timeout for alert dispatch"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Supplier Reconciliation Engine",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list with environment-aware defaults.

        Production/Staging: Only specified origins
        Development: Include localhost origins
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if not 0 <= self.RECON_MAX_REJECTION_RATIO < 1:
            errors.append("RECON_MAX_REJECTION_RATIO must be in [0, 1)")

        if self.RECON_WORKER_POOL_SIZE < 1:
            errors.append("RECON_WORKER_POOL_SIZE must be at least 1")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PUT", "PATCH", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-Actor-Id",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    if not settings.DATABASE_URL:
        status["errors"].append("DATABASE_URL is not set")
        status["valid"] = False
    else:
        status["variables"]["DATABASE_URL"] = "✓ Set"

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("ALERT_WEBHOOK_URL", settings.ALERT_WEBHOOK_URL, "Alert requests will only be logged"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "⚠ Not set"
        else:
            status["variables"][name] = "✓ Set"

    errors = settings.validate_production_config()
    for error in errors:
        if error not in status["errors"] and not error.startswith("DATABASE_URL is required"):
            status["errors"].append(error)
            status["valid"] = False

    return status


# Export settings instance for convenience
settings = get_settings()
