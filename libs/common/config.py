from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 40
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Supabase
    # Placeholder secret for local and test runs; real deployments override via env.
    SUPABASE_JWT_SECRET: str = "test-jwt-secret"

    # Redis (arq workers)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Microservices URLs
    COMMUNICATIONS_SERVICE_URL: str = "http://communications-service:8004"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_BASE: str = "https://api.stripe.com"
    STRIPE_CURRENCY: str = "usd"
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Registration rules
    # "lenient": a saved payment method id is enough.
    # "strict": the setup intent must also have succeeded.
    PAYMENT_METHOD_POLICY: Literal["strict", "lenient"] = "lenient"
    REGISTRATION_CLAIM_TTL_MINUTES: int = 5
    MEMBERSHIP_EXPIRING_SOON_DAYS: int = 90

    # Staged accounting records older than this are verified against Stripe
    STAGED_RECONCILE_AFTER_MINUTES: int = 10

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
