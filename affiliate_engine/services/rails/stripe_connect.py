"""Stripe Connect rail: Express connected accounts, funds moved with /v1/transfers.

Raw REST over httpx, form-encoded like every other Stripe call in the
service. Transfers carry `Idempotency-Key` and a `transfer_group` derived
from the commission id so a lost response can be looked up afterwards.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from affiliate_engine.errors import PermanentFailure, RailNotReady
from affiliate_engine.services.rails.base import (
    OnboardingLink, PayoutRail, RailStatus, TransferRequest, TransferResult,
)
from config.settings import settings

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = frozenset({"balance_insufficient", "rate_limit", "lock_timeout"})


class StripeConnectRail(PayoutRail):
    name = "stripe_connect"
    automated = True
    supports_lookup = True

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        if not settings.STRIPE_SECRET_KEY:
            raise RailNotReady("stripe_connect rail is not configured", rail="stripe_connect")
        headers = {"Authorization": f"Bearer {settings.STRIPE_SECRET_KEY}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _url(self, path: str) -> str:
        return f"{settings.STRIPE_API_BASE.rstrip('/')}{path}"

    def _error_details(self, resp: httpx.Response) -> tuple[Optional[str], str]:
        try:
            err = resp.json().get("error") or {}
        except (ValueError, AttributeError):
            return None, f"HTTP {resp.status_code}"
        return err.get("code") or err.get("type"), err.get("message") or f"HTTP {resp.status_code}"

    # ── Onboarding ───────────────────────────────────────────────────────────

    async def start_onboarding(self, affiliate, account, state: str) -> OnboardingLink:
        account_id = account.external_account_id
        if not account_id:
            resp = await self._send("POST", self._url("/v1/accounts"), headers=self._headers(), data={
                "type": "express",
                "country": settings.STRIPE_CONNECT_COUNTRY,
                "email": affiliate.email,
                "capabilities[transfers][requested]": "true",
                "business_type": "individual",
                "metadata[affiliate_id]": affiliate.id,
                "metadata[affiliate_code]": affiliate.code,
            })
            self._raise_for_response(resp, _TRANSIENT_CODES)
            account_id = resp.json()["id"]
            logger.info("Created Stripe Connect account %s for affiliate %s", account_id, affiliate.id)

        base = settings.APP_BASE_URL.rstrip("/")
        resp = await self._send("POST", self._url("/v1/account_links"), headers=self._headers(), data={
            "account": account_id,
            "refresh_url": f"{base}/affiliate/payouts?rail=stripe_connect&refresh=1",
            "return_url": f"{base}/affiliate/payouts?rail=stripe_connect&onboarding=done",
            "type": "account_onboarding",
        })
        self._raise_for_response(resp, _TRANSIENT_CODES)
        return OnboardingLink(url=resp.json().get("url"), external_account_id=account_id)

    async def check_ready(self, account) -> RailStatus:
        if not account.external_account_id:
            return RailStatus(connected=False, payouts_enabled=False, onboarding_status="not_started")
        resp = await self._send(
            "GET", self._url(f"/v1/accounts/{account.external_account_id}"), headers=self._headers(),
        )
        if resp.status_code in (403, 404):
            # Account deleted or access revoked on the Stripe side
            return RailStatus(connected=False, payouts_enabled=False, onboarding_status="failed")
        self._raise_for_response(resp, _TRANSIENT_CODES)
        return status_from_account(resp.json())

    # ── Money movement ───────────────────────────────────────────────────────

    async def transfer(self, request: TransferRequest) -> TransferResult:
        resp = await self._send(
            "POST", self._url("/v1/transfers"),
            headers=self._headers(request.idempotency_key),
            data={
                "amount": str(request.amount_minor),
                "currency": request.currency.lower(),
                "destination": request.destination,
                "transfer_group": request.transfer_group,
                "description": request.description or f"Affiliate commission {request.commission_id}",
                "metadata[commission_id]": request.commission_id,
            },
        )
        self._raise_for_response(resp, _TRANSIENT_CODES)
        body = resp.json()
        if not body.get("id"):
            raise PermanentFailure("stripe_connect: transfer response without id", rail_code="malformed")
        return TransferResult(
            transfer_id=body["id"],
            amount_minor=int(body.get("amount", request.amount_minor)),
            currency=(body.get("currency") or request.currency).upper(),
            raw=body,
        )

    async def lookup_transfer(self, request: TransferRequest) -> Optional[TransferResult]:
        resp = await self._send(
            "GET", self._url("/v1/transfers"), headers=self._headers(),
            params={"transfer_group": request.transfer_group, "limit": "10"},
        )
        self._raise_for_response(resp, _TRANSIENT_CODES)
        for item in resp.json().get("data") or []:
            if item.get("destination") == request.destination and not item.get("reversed"):
                return TransferResult(
                    transfer_id=item["id"],
                    amount_minor=int(item.get("amount", request.amount_minor)),
                    currency=(item.get("currency") or request.currency).upper(),
                    raw=item,
                )
        return None


def status_from_account(account: dict) -> RailStatus:
    """Stripe account object → normalized readiness (charges and payouts both enabled)."""
    charges = bool(account.get("charges_enabled"))
    payouts = bool(account.get("payouts_enabled"))
    ready = charges and payouts
    if ready:
        onboarding = "completed"
    elif account.get("details_submitted"):
        onboarding = "pending"
    else:
        onboarding = "pending" if account.get("id") else "not_started"
    return RailStatus(
        connected=bool(account.get("details_submitted")) or ready,
        payouts_enabled=ready,
        onboarding_status=onboarding,
        details={
            "charges_enabled": charges,
            "payouts_enabled": payouts,
            "details_submitted": bool(account.get("details_submitted")),
            "requirements_due": (account.get("requirements") or {}).get("currently_due") or [],
        },
    )
