"""Mercado Pago marketplace split rail.

Affiliates connect their own Mercado Pago account through OAuth; the stored
access token is what both the readiness check and transfers run against.
Mercado Pago has no way to list money transfers by idempotency key, so a
lost response can only be covered by resending the same X-Idempotency-Key.
"""
from __future__ import annotations

import logging
from urllib.parse import urlencode

from affiliate_engine.errors import PermanentFailure, RailNotReady, UserInputError
from affiliate_engine.models import format_minor
from affiliate_engine.services.rails.base import (
    OAuthGrant, OnboardingLink, PayoutRail, RailStatus, TransferRequest, TransferResult,
)
from config.settings import settings

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = frozenset({"too_many_requests", "internal_error", "service_unavailable"})


class MercadoPagoSplitRail(PayoutRail):
    name = "mercadopago_split"
    automated = True
    supports_lookup = False

    def _url(self, path: str) -> str:
        return f"{settings.MERCADOPAGO_API_BASE.rstrip('/')}{path}"

    def _redirect_uri(self) -> str:
        if settings.MERCADOPAGO_REDIRECT_URI:
            return settings.MERCADOPAGO_REDIRECT_URI
        base = settings.APP_BASE_URL.rstrip("/")
        return f"{base}/api/v1/affiliate/payout-accounts/mercadopago_split/callback"

    # ── Onboarding ───────────────────────────────────────────────────────────

    async def start_onboarding(self, affiliate, account, state: str) -> OnboardingLink:
        if not settings.MERCADOPAGO_CLIENT_ID:
            raise RailNotReady("mercadopago_split rail is not configured", rail=self.name)
        query = urlencode({
            "client_id": settings.MERCADOPAGO_CLIENT_ID,
            "response_type": "code",
            "platform_id": "mp",
            "state": state,
            "redirect_uri": self._redirect_uri(),
        })
        return OnboardingLink(
            url=f"{settings.MERCADOPAGO_AUTH_BASE.rstrip('/')}/authorization?{query}",
            external_account_id=account.external_account_id,
        )

    async def complete_onboarding(self, account, params: dict[str, str]) -> OAuthGrant:
        code = params.get("code")
        if not code:
            raise UserInputError("Missing authorization code")
        resp = await self._send("POST", self._url("/oauth/token"), json={
            "client_id": settings.MERCADOPAGO_CLIENT_ID,
            "client_secret": settings.MERCADOPAGO_CLIENT_SECRET,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_uri(),
        })
        self._raise_for_response(resp, _TRANSIENT_CODES)
        body = resp.json()
        if not body.get("access_token") or not body.get("user_id"):
            raise PermanentFailure("mercadopago_split: token response incomplete", rail_code="malformed")
        return OAuthGrant(
            external_account_id=str(body["user_id"]),
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
        )

    async def check_ready(self, account) -> RailStatus:
        if not account.external_account_id or not account.access_token:
            return RailStatus(connected=False, payouts_enabled=False, onboarding_status="not_started")
        resp = await self._send(
            "GET", self._url("/users/me"),
            headers={"Authorization": f"Bearer {account.access_token}"},
        )
        if resp.status_code in (401, 403):
            logger.info("Mercado Pago token for account %s rejected", account.external_account_id)
            return RailStatus(
                connected=False, payouts_enabled=False, onboarding_status="failed",
                details={"reason": "token_invalid"},
            )
        self._raise_for_response(resp, _TRANSIENT_CODES)
        return status_from_user(resp.json())

    # ── Money movement ───────────────────────────────────────────────────────

    async def transfer(self, request: TransferRequest) -> TransferResult:
        token = settings.MERCADOPAGO_ACCESS_TOKEN
        if not token:
            raise RailNotReady("mercadopago_split rail is not configured", rail=self.name)
        resp = await self._send(
            "POST", self._url("/v1/money_transfers"),
            headers={
                "Authorization": f"Bearer {token}",
                "X-Idempotency-Key": request.idempotency_key,
            },
            json={
                "amount": float(format_minor(request.amount_minor, request.currency)),
                "currency_id": request.currency.upper(),
                "collector_id": request.destination,
                "external_reference": request.transfer_group,
                "description": request.description or f"Affiliate commission {request.commission_id}",
            },
        )
        self._raise_for_response(resp, _TRANSIENT_CODES)
        body = resp.json()
        transfer_id = body.get("id")
        if not transfer_id:
            raise PermanentFailure("mercadopago_split: transfer response without id", rail_code="malformed")
        if body.get("status") in ("rejected", "cancelled"):
            raise PermanentFailure(
                f"mercadopago_split: transfer {transfer_id} {body.get('status')}",
                rail_code=body.get("status_detail") or body.get("status"),
            )
        return TransferResult(
            transfer_id=str(transfer_id),
            amount_minor=request.amount_minor,
            currency=request.currency.upper(),
            raw=body,
        )


def status_from_user(user: dict) -> RailStatus:
    """/users/me → ready when both the account and its site status are active."""
    account_status = user.get("status")
    site_status = user.get("site_status")
    ready = account_status == "active" and site_status == "active"
    return RailStatus(
        connected=True,
        payouts_enabled=ready,
        onboarding_status="completed" if ready else "pending",
        details={"status": account_status, "site_status": site_status},
    )
