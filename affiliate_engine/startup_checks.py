"""Startup validation: catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)

_DEFAULT_JWT_SECRET = "storefront-dev-secret-change-in-prod"
_DEFAULT_SIGNING_KEY = "storefront-dev-affiliate-key-change-in-prod"


def is_production() -> bool:
    return bool(settings.DATABASE_URL) and "sqlite" not in settings.DATABASE_URL


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = is_production()

    if is_prod and settings.JWT_SECRET == _DEFAULT_JWT_SECRET:
        logger.critical("JWT_SECRET is still the default! Set a real secret for production.")
        sys.exit(1)

    # Anyone holding the default key could forge attribution cookies
    if is_prod and settings.AFFILIATE_SIGNING_KEY == _DEFAULT_SIGNING_KEY:
        logger.critical("AFFILIATE_SIGNING_KEY is still the default! Set a real key for production.")
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to *, restrict in production")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set, commission admin endpoints disabled")

    if not settings.ORDER_WEBHOOK_SECRET:
        warnings.append("ORDER_WEBHOOK_SECRET not set, order payment webhooks are accepted unsigned")

    if not settings.STRIPE_SECRET_KEY:
        warnings.append("STRIPE_SECRET_KEY not set, stripe_connect rail disabled")
    elif not settings.STRIPE_CONNECT_WEBHOOK_SECRET:
        warnings.append("STRIPE_CONNECT_WEBHOOK_SECRET not set, account.updated events will be rejected")

    if not (settings.MERCADOPAGO_CLIENT_ID and settings.MERCADOPAGO_CLIENT_SECRET):
        warnings.append("MERCADOPAGO_CLIENT_ID/SECRET not set, mercadopago_split onboarding disabled")

    if not settings.APP_BASE_URL:
        warnings.append("APP_BASE_URL not set, onboarding return links will be relative")

    if not 1 <= settings.AFFILIATE_COOKIE_DAYS <= 365:
        warnings.append(f"AFFILIATE_COOKIE_DAYS={settings.AFFILIATE_COOKIE_DAYS} is outside 1..365")

    for w in warnings:
        logger.warning("%s", w)

    if not warnings:
        logger.info("All startup checks passed")

    return warnings
