"""Application configuration.

Loads settings from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API
    api_version: str = "0.1.0"
    debug: bool = False

    # Storefront services
    store_settings_url: str = "http://storefront:3000/api"
    coupon_service_url: str = "http://storefront:3000/api"
    cart_service_url: str = "http://storefront:3000/api"
    order_service_url: str = "http://storefront:3000/api"

    # Payment gateway
    payment_gateway_url: str = "http://payments:8010"
    payment_gateway_api_key: str = "sk_test_change_in_production"

    # Timeouts (seconds). Settings and coupon calls are bounded and fall
    # back; payment and order calls only use the gateway's own limit.
    settings_timeout: float = 3.0
    coupon_timeout: float = 5.0
    cart_timeout: float = 5.0
    payment_timeout: float = 120.0
    order_timeout: float = 120.0

    # Store settings cache
    settings_cache_ttl: float = 300.0

    # Payment gateway resilience
    gateway_max_attempts: int = 3
    gateway_backoff_initial: float = 0.2
    gateway_backoff_factor: float = 2.0
    gateway_backoff_max: float = 2.0
    gateway_breaker_threshold: int = 5
    gateway_breaker_cooldown: float = 30.0

    # Checkout
    currency: str = "EUR"
    priority_shipping_price: str = "19.99"
    require_authentication: bool = False
    login_path: str = "/auth/login"
    checkout_path: str = "/checkout"
    confirmation_path: str = "/checkout/confirmation"

    # Session lifetime (seconds): idle sessions expire, placed orders answer
    # retries until their record expires
    session_ttl: float = 1800.0
    completed_order_ttl: float = 86400.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_prefix="CHECKOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
