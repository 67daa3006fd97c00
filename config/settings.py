"""App settings, loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Public storefront URL (onboarding return/refresh links)
    APP_BASE_URL = os.getenv("APP_BASE_URL", "")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///affiliates.db")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "storefront-dev-secret-change-in-prod")

    # Admin API key (operator commission surface)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # Attribution cookie
    AFFILIATE_COOKIE_DAYS = int(os.getenv("AFFILIATE_COOKIE_DAYS", "30"))
    AFFILIATE_SIGNING_KEY = os.getenv(
        "AFFILIATE_SIGNING_KEY",
        "storefront-dev-affiliate-key-change-in-prod"
    )

    # Stripe Connect (destination-charge rail)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_CONNECT_WEBHOOK_SECRET = os.getenv("STRIPE_CONNECT_WEBHOOK_SECRET", "")
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
    STRIPE_CONNECT_COUNTRY = os.getenv("STRIPE_CONNECT_COUNTRY", "BR")

    # Mercado Pago (marketplace split rail)
    MERCADOPAGO_CLIENT_ID = os.getenv("MERCADOPAGO_CLIENT_ID", "")
    MERCADOPAGO_CLIENT_SECRET = os.getenv("MERCADOPAGO_CLIENT_SECRET", "")
    MERCADOPAGO_ACCESS_TOKEN = os.getenv("MERCADOPAGO_ACCESS_TOKEN", "")
    MERCADOPAGO_REDIRECT_URI = os.getenv("MERCADOPAGO_REDIRECT_URI", "")
    MERCADOPAGO_API_BASE = os.getenv("MERCADOPAGO_API_BASE", "https://api.mercadopago.com")
    MERCADOPAGO_AUTH_BASE = os.getenv("MERCADOPAGO_AUTH_BASE", "https://auth.mercadopago.com")

    # Order payment events from checkout
    ORDER_WEBHOOK_SECRET = os.getenv("ORDER_WEBHOOK_SECRET", "")

    # Payout dispatch
    PAYOUT_RAIL_TIMEOUT_SECONDS = float(os.getenv("PAYOUT_RAIL_TIMEOUT_SECONDS", "15"))
    PAYOUT_CLAIM_LEASE_SECONDS = int(os.getenv("PAYOUT_CLAIM_LEASE_SECONDS", "120"))

    # Outbound affiliate notifications (optional)
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL", "")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
