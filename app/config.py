"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = None

    # Redis (rate limiting + job queue)
    redis_url: Optional[str] = None

    # Environment
    environment: str = "development"

    # Shopify Storefront API
    shopify_domain: str = "yeoskin.myshopify.com"
    shopify_api_version: str = "2024-01"
    shopify_storefront_token: Optional[str] = None
    shopify_timeout_seconds: float = 10.0
    cart_source_attribute: str = "yeoskin_platform"

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 30  # Seconds before a trial call is let through

    # Checkout admission control
    checkout_rate_limit: int = 5  # requests per window per client
    checkout_rate_window_seconds: int = 60

    # Reservations
    reservation_stale_seconds: int = 120  # creating rows older than this are abandoned
    reservation_retry_after_seconds: int = 2
    reservation_sweep_interval_seconds: int = 60
    last_error_max_length: int = 500

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None  # Sentry project DSN
    sentry_environment: Optional[str] = None  # Defaults to environment setting

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
