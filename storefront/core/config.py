# storefront/core/config.py
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application settings loaded from environment.

    Required env vars (.env):
      - DATABASE_URL (Postgres connection string; sqlite:// works for local runs)
      - AUTH_JWT_SECRET (HS256 secret shared with the auth provider)

    Optional:
      - DB_POOL_SIZE, DB_MAX_OVERFLOW (per-process connection pool)
      - PAYMENT_GATEWAY ("mock" | "razorpay"), RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET
      - GATEWAY_TIMEOUT_SECONDS (bounded timeout for gateway calls)
      - CHECKOUT_SESSION_TTL_MINUTES, ORDER_NUMBER_MAX_ATTEMPTS,
        EXPECTED_DELIVERY_DAYS
    """

    PROJECT_NAME: str = "Hearthwood Storefront API"
    API_V1_STR: str = "/api/v1"

    DATABASE_URL: str
    # Size these to the Postgres pooler's client limit for the deployment.
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # JWT verification (backend-side)
    AUTH_JWT_SECRET: str
    AUTH_JWT_ALG: str = "HS256"

    # Payment gateway
    PAYMENT_GATEWAY: Literal["mock", "razorpay"] = "mock"
    RAZORPAY_KEY_ID: str = "mock_key"
    RAZORPAY_KEY_SECRET: str = "mock_secret"
    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    CURRENCY: str = "INR"

    # Order lifecycle
    CHECKOUT_SESSION_TTL_MINUTES: int = 60
    ORDER_NUMBER_MAX_ATTEMPTS: int = 5
    EXPECTED_DELIVERY_DAYS: int = 7

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings loader.
    Ensures we don't re-parse .env on every import / request.
    """
    return Settings()
