"""Portal gate configuration loaded from environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Placeholder secret, flagged by check_security_configuration().
DEFAULT_JWT_SECRET = "change-me-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Portal Gate"
    app_version: str = "1.0.0"
    environment: Literal["development", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./portal.db"
    db_pool_size: int = 20
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Tokens
    jwt_secret_key: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = Field(default=15, ge=1)
    refresh_token_expire_days: int = Field(default=7, ge=1)
    rotate_refresh_tokens: bool = True

    # Sessions
    session_idle_timeout_minutes: int = Field(default=120, ge=1)
    session_absolute_timeout_hours: int = Field(default=24, ge=1)

    # Two-factor authentication
    two_factor_issuer: str = "mesrit.ne"
    two_factor_backup_code_count: int = Field(default=10, ge=1, le=50)

    # Request protection
    csrf_protection: bool = True
    rate_limit_enabled: bool = True
    trusted_proxy_ips: list[str] = []

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return level

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def secure_cookies(self) -> bool:
        """Cookies carry the Secure flag only in production."""
        return self.is_production

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def check_security_configuration(self) -> list[str]:
        """Return warnings about insecure settings for the current environment."""
        warnings: list[str] = []
        if self.jwt_secret_key == DEFAULT_JWT_SECRET:
            warnings.append("JWT_SECRET_KEY is the default value; set a unique secret")
        elif len(self.jwt_secret_key) < 32:
            warnings.append("JWT_SECRET_KEY is shorter than 32 characters")
        if self.is_production:
            if self.debug:
                warnings.append("DEBUG is enabled in production")
            if not self.csrf_protection:
                warnings.append("CSRF protection is disabled in production")
            if not self.rate_limit_enabled:
                warnings.append("Rate limiting is disabled in production")
            if self.is_sqlite:
                warnings.append("SQLite database configured in production")
        return warnings


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
