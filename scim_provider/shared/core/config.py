from functools import lru_cache
from threading import Lock
from typing import Optional

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the SCIM provider.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "SCIM Provider"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    DATABASE_URL: str = "sqlite+aiosqlite:///./scim.db"
    DB_ECHO: bool = False
    # Create tables on startup. Deployments managing their own schema turn this off.
    DB_AUTO_CREATE: bool = True

    SCIM_BASE_PATH: str = "/scim/v2"
    SCIM_DEFAULT_COUNT: int = 100
    SCIM_MAX_RESULTS: int = 200
    # Reject mutations that do not carry an If-Match header.
    SCIM_REQUIRE_IF_MATCH: bool = False
    # Store the primary email as the username (userName reports the email).
    SCIM_EMAIL_AS_USERNAME: bool = False
    # Only users provisioned through SCIM are visible to SCIM clients.
    SCIM_LIST_MANAGED_ONLY: bool = True
    # Additional User extension schema documents (JSON, RFC 7643 section 7).
    SCIM_EXTRA_SCHEMA_FILES: list[str] = Field(default_factory=list)
    SCIM_DOCUMENTATION_URI: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        self._validate_database_config()
        self._validate_scim_config()
        return self

    def _validate_database_config(self) -> None:
        if not self.DATABASE_URL.strip():
            raise ValueError("DATABASE_URL is not set. The application cannot start.")
        if self.is_production and "sqlite" in self.DATABASE_URL.lower():
            structlog.get_logger().warning(
                "database_sqlite_in_production",
                msg="SQLite is not recommended for production deployments.",
            )

    def _validate_scim_config(self) -> None:
        if not self.SCIM_BASE_PATH.startswith("/"):
            raise ValueError("SCIM_BASE_PATH must start with '/'")
        self.SCIM_BASE_PATH = self.SCIM_BASE_PATH.rstrip("/")
        if not self.SCIM_BASE_PATH:
            raise ValueError("SCIM_BASE_PATH must not be the server root")
        if self.SCIM_MAX_RESULTS < 1:
            raise ValueError("SCIM_MAX_RESULTS must be at least 1")
        if not 0 <= self.SCIM_DEFAULT_COUNT <= self.SCIM_MAX_RESULTS:
            raise ValueError(
                "SCIM_DEFAULT_COUNT must be between 0 and SCIM_MAX_RESULTS"
            )

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
