"""
Centralized configuration using Pydantic BaseSettings.
All environment variables are optional to prevent application startup failure.
"""

from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,  # Allow both field name and alias
        extra="ignore",
    )

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")
    jwt_expiry_days: int = Field(default=7, alias="JWT_EXPIRY_DAYS")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_id: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ID")
    stripe_product_name: str = Field(default="Salon Success Manager Pro", alias="STRIPE_PRODUCT_NAME")
    stripe_trial_days: int = Field(default=15, alias="STRIPE_TRIAL_DAYS")

    # Pricing configuration (£23.97 per month, in pence)
    subscription_amount: int = Field(default=2397, alias="SUBSCRIPTION_AMOUNT")
    subscription_currency: str = Field(default="gbp", alias="SUBSCRIPTION_CURRENCY")

    # Promo codes that map to a Stripe promotion code id, e.g. {"SALON20": "promo_123"}
    promo_discount_codes: Dict[str, str] = Field(default_factory=dict, alias="PROMO_DISCOUNT_CODES")

    # Post-checkout verification polling
    checkout_poll_interval_seconds: float = Field(default=2.0, alias="CHECKOUT_POLL_INTERVAL_SECONDS")
    checkout_poll_max_attempts: int = Field(default=30, alias="CHECKOUT_POLL_MAX_ATTEMPTS")

    # Infrastructure configuration
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./salon_success.db", alias="DATABASE_URL")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")
    render_external_url: Optional[str] = Field(default=None, alias="RENDER_EXTERNAL_URL")
    render_service_name: Optional[str] = Field(default=None, alias="RENDER_SERVICE_NAME")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or bool(settings.env and settings.env.lower() == "production")
