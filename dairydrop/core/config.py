# dairydrop/core/config.py

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application settings loaded from environment.

    Required env vars (.env):
      - DATABASE_URL (Postgres connection string; sqlite:// works for tests)
      - SUPABASE_URL
      - SUPABASE_KEY (anon key)
      - SUPABASE_JWT_SECRET (JWT signing secret from Supabase project settings)

    Optional:
      - SUPABASE_SERVICE_ROLE_KEY (needed for refund evidence uploads)
      - SMTP_* (order notifications stay in the outbox as failed without them)
    """

    PROJECT_NAME: str = "Dairy Drop API"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # JSON list in .env, e.g. CORS_ORIGINS=["https://shop.example.com"]
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    DATABASE_URL: str

    # Supabase
    SUPABASE_URL: str
    SUPABASE_KEY: str
    SUPABASE_JWT_SECRET: str
    SUPABASE_JWT_ALG: str = "HS256"
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    STORAGE_BUCKET: str = "assets"

    # Pricing
    TAX_RATE: Decimal = Decimal("0.05")
    DELIVERY_CHARGE: Decimal = Decimal("0.00")
    DEFAULT_CURRENCY: str = "PKR"

    # Checkout retries when two orders race for the same order number
    ORDER_NUMBER_MAX_ATTEMPTS: int = 3

    # Dairy products must be reported within this many days of delivery
    REFUND_WINDOW_DAYS: int = 3

    # SMTP (Gmail example: host smtp.gmail.com, port 465, SSL on, TLS off)
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_FROM_EMAIL: str | None = None
    SMTP_FROM_NAME: str = "Dairy Drop"
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False

    NOTIFICATION_MAX_ATTEMPTS: int = 5

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings loader.
    Ensures we don't re-parse .env on every import / request.
    """
    return Settings()
