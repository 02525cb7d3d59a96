"""
Application configuration

SECURITY: Defaults are fail-safe for production.
- DEBUG defaults to False
- DATABASE_URL has no default (will fail if not set outside development)
- Runtime validation catches insecure configurations
"""
import json
import os
import logging
from typing import List
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

DEVELOPMENT_DATABASE_URL = "sqlite+aiosqlite:///./marketplace.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # App - defaults are PRODUCTION safe
    APP_NAME: str = "Marketplace Orders"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"

    # Database - NO DEFAULT (will fail if not set)
    DATABASE_URL: str
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # 1 hour
    SQLITE_BUSY_TIMEOUT_SECONDS: float = 30.0
    AUTO_CREATE_TABLES: bool = False

    # Reservation window: how long a PENDING order holds its stock
    ORDER_RESERVATION_WINDOW_MINUTES: int = 15

    # Expiration sweeper
    ORDER_SWEEP_ENABLED: bool = True
    ORDER_SWEEP_INTERVAL_SECONDS: float = 60.0
    ORDER_SWEEP_BATCH_SIZE: int = 500

    # Checkout transaction retries (store unavailable, deadlock)
    CHECKOUT_MAX_RETRIES: int = 3
    CHECKOUT_RETRY_BASE_DELAY: float = 0.1
    CHECKOUT_RETRY_MAX_DELAY: float = 2.0

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "100/minute"
    RATE_LIMIT_CHECKOUT: str = "10/minute"

    # CORS - accepts JSON array or comma-separated string
    CORS_ORIGINS: List[str] = DEFAULT_CORS_ORIGINS

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            if not v or v.strip() == "":
                return DEFAULT_CORS_ORIGINS
            # Try JSON first
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            # Fallback to comma-separated
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("ORDER_RESERVATION_WINDOW_MINUTES", "ORDER_SWEEP_BATCH_SIZE")
    @classmethod
    def must_be_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("ORDER_SWEEP_INTERVAL_SECONDS")
    @classmethod
    def must_be_positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("CHECKOUT_MAX_RETRIES")
    @classmethod
    def retries_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    @model_validator(mode="after")
    def validate_production_config(self):
        """Runtime validation to catch insecure production configurations."""
        if self.ENVIRONMENT == "production":
            errors = []

            if self.DEBUG:
                errors.append(
                    "DEBUG=True is forbidden in production. "
                    "Set DEBUG=false or ENVIRONMENT=development"
                )

            if self.is_sqlite:
                errors.append(
                    "SQLite DATABASE_URL detected in production. "
                    "Configure a PostgreSQL connection."
                )

            cors_warnings = [
                f"CORS origin '{origin}' should be removed in production"
                for origin in self.CORS_ORIGINS
                if origin == "*" or "localhost" in origin or "127.0.0.1" in origin
            ]
            if cors_warnings:
                logger.warning(
                    "CORS WARNINGS in production:\n" +
                    "\n".join(f"  - {w}" for w in cors_warnings)
                )

            if errors:
                raise ValueError(
                    "PRODUCTION CONFIGURATION VIOLATIONS:\n" + "\n".join(f"  - {e}" for e in errors)
                )

        return self


# Try to load settings, provide helpful error on failure
try:
    settings = Settings()
except Exception:
    # In development, allow fallback defaults
    if os.getenv("ENVIRONMENT", "development") == "development":
        logger.warning(
            "Settings validation failed, using development defaults. "
            "Set DATABASE_URL in .env file."
        )
        os.environ.setdefault("DATABASE_URL", DEVELOPMENT_DATABASE_URL)
        os.environ.setdefault("ENVIRONMENT", "development")
        settings = Settings()
    else:
        raise
