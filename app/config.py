"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Database
    DATABASE_URL: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=20)

    # Transaction retry policy for entitlement writes
    TXN_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    TXN_RETRY_MIN_SECONDS: float = Field(default=0.05, ge=0)
    TXN_RETRY_MAX_SECONDS: float = Field(default=1.0, ge=0)

    # RevenueCat
    REVENUECAT_API_KEY: str = Field(default="")
    REVENUECAT_WEBHOOK_SECRET: str = Field(default="")
    REVENUECAT_API_BASE_URL: str = Field(default="https://api.revenuecat.com/v1")
    PREMIUM_ENTITLEMENT_ID: str = Field(default="premium")

    # Store products
    MONTHLY_PRODUCT_ID: str = Field(default="monthly_showseek_sub")
    YEARLY_PRODUCT_ID: str = Field(default="showseek_yearly_sub")
    LIFETIME_PRODUCT_IDS: str = Field(
        default="premium_unlock,rc_promo_premium_lifetime",
        description="Comma separated one-time purchase product ids",
    )
    MONTHLY_TRIAL_OFFER_ID: str = Field(default="monthly-free-trial")

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def lifetime_product_ids_list(self) -> List[str]:
        """Parse LIFETIME_PRODUCT_IDS into a list."""
        return [pid.strip() for pid in self.LIFETIME_PRODUCT_IDS.split(",") if pid.strip()]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.DATABASE_URL

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("TXN_RETRY_MAX_SECONDS")
    @classmethod
    def validate_retry_window(cls, v: float, info) -> float:
        """Ensure the backoff ceiling is not below the floor."""
        floor = info.data.get("TXN_RETRY_MIN_SECONDS", 0)
        if v < floor:
            raise ValueError("TXN_RETRY_MAX_SECONDS must be >= TXN_RETRY_MIN_SECONDS")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
