"""Tests for the Stripe Connect, Mercado Pago and manual payout rails (no network)."""
from __future__ import annotations

import dataclasses
import json
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from affiliate_engine.errors import PermanentFailure, RailNotReady, TransientFailure, UserInputError
from affiliate_engine.services.rails.base import TransferRequest
from affiliate_engine.services.rails.manual import ManualRail
from affiliate_engine.services.rails.mercadopago import MercadoPagoSplitRail, status_from_user
from affiliate_engine.services.rails.registry import automated_rail_names, get_rail
from affiliate_engine.services.rails.stripe_connect import StripeConnectRail, status_from_account
from config.settings import settings


def _request(**overrides) -> TransferRequest:
    fields = dict(
        commission_id="c-123",
        amount_minor=2000,
        currency="BRL",
        destination="acct_dest",
        idempotency_key="commission_payout_c-123",
        description="Affiliate commission for order o-1",
    )
    fields.update(overrides)
    return TransferRequest(**fields)


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _stripe_error(status: int, code: str, message: str = "nope") -> httpx.Response:
    return httpx.Response(status, json={"error": {"type": "invalid_request_error", "code": code, "message": message}})


@pytest.fixture
def stripe_key(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_API_BASE", "https://api.stripe.test")


@pytest.fixture
def mp_config(monkeypatch):
    monkeypatch.setattr(settings, "MERCADOPAGO_CLIENT_ID", "mp-client")
    monkeypatch.setattr(settings, "MERCADOPAGO_ACCESS_TOKEN", "APP_USR-platform")
    monkeypatch.setattr(settings, "MERCADOPAGO_API_BASE", "https://api.mercadopago.test")
    monkeypatch.setattr(settings, "APP_BASE_URL", "https://shop.example")


# ── Stripe Connect ───────────────────────────────────────────────────────────

class TestStripeTransfer:
    @pytest.mark.asyncio
    async def test_success_sends_idempotency_key(self, stripe_key):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["headers"] = request.headers
            captured["form"] = _form(request)
            captured["path"] = request.url.path
            return httpx.Response(200, json={"id": "tr_1", "amount": 2000, "currency": "brl"})

        rail = StripeConnectRail(transport=httpx.MockTransport(handler))
        result = await rail.transfer(_request())

        assert result.transfer_id == "tr_1"
        assert result.amount_minor == 2000
        assert result.currency == "BRL"
        assert captured["path"] == "/v1/transfers"
        assert captured["headers"]["Idempotency-Key"] == "commission_payout_c-123"
        assert captured["headers"]["Authorization"] == "Bearer sk_test_123"
        assert captured["form"]["amount"] == "2000"
        assert captured["form"]["currency"] == "brl"
        assert captured["form"]["destination"] == "acct_dest"
        assert captured["form"]["transfer_group"] == "commission_c-123"
        assert captured["form"]["metadata[commission_id]"] == "c-123"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(500, json={"error": {"message": "boom"}}),
        httpx.Response(503, text="unavailable"),
        httpx.Response(429, json={"error": {"code": "rate_limit", "message": "slow down"}}),
    ])
    async def test_outage_is_transient(self, stripe_key, response):
        rail = StripeConnectRail(transport=httpx.MockTransport(lambda request: response))
        with pytest.raises(TransientFailure):
            await rail.transfer(_request())

    @pytest.mark.asyncio
    async def test_insufficient_platform_balance_is_transient(self, stripe_key):
        rail = StripeConnectRail(transport=httpx.MockTransport(
            lambda request: _stripe_error(400, "balance_insufficient")
        ))
        with pytest.raises(TransientFailure) as exc:
            await rail.transfer(_request())
        assert exc.value.rail_code == "balance_insufficient"

    @pytest.mark.asyncio
    async def test_invalid_destination_is_permanent(self, stripe_key):
        rail = StripeConnectRail(transport=httpx.MockTransport(
            lambda request: _stripe_error(400, "account_invalid", "No such destination")
        ))
        with pytest.raises(PermanentFailure) as exc:
            await rail.transfer(_request())
        assert exc.value.rail_code == "account_invalid"
        assert "No such destination" in exc.value.message

    @pytest.mark.asyncio
    async def test_read_timeout_outcome_unknown(self, stripe_key):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        rail = StripeConnectRail(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientFailure) as exc:
            await rail.transfer(_request())
        assert exc.value.outcome_unknown is True

    @pytest.mark.asyncio
    async def test_connect_error_outcome_known(self, stripe_key):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        rail = StripeConnectRail(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientFailure) as exc:
            await rail.transfer(_request())
        assert exc.value.outcome_unknown is False

    @pytest.mark.asyncio
    async def test_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")
        rail = StripeConnectRail(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        with pytest.raises(RailNotReady):
            await rail.transfer(_request())


class TestStripeLookup:
    @pytest.mark.asyncio
    async def test_finds_transfer_by_group(self, stripe_key):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.params["transfer_group"] == "commission_c-123"
            return httpx.Response(200, json={"data": [
                {"id": "tr_other", "destination": "acct_someone_else", "amount": 2000, "reversed": False},
                {"id": "tr_found", "destination": "acct_dest", "amount": 2000, "currency": "brl", "reversed": False},
            ]})

        rail = StripeConnectRail(transport=httpx.MockTransport(handler))
        found = await rail.lookup_transfer(_request())
        assert found.transfer_id == "tr_found"

    @pytest.mark.asyncio
    async def test_reversed_transfer_not_counted(self, stripe_key):
        rail = StripeConnectRail(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"data": [
            {"id": "tr_rev", "destination": "acct_dest", "amount": 2000, "reversed": True},
        ]})))
        assert await rail.lookup_transfer(_request()) is None


class TestStripeAccounts:
    def test_ready_needs_charges_and_payouts(self):
        assert status_from_account({"id": "acct_1", "charges_enabled": True, "payouts_enabled": True}).payouts_enabled
        partial = status_from_account({
            "id": "acct_1", "charges_enabled": True, "payouts_enabled": False, "details_submitted": True,
            "requirements": {"currently_due": ["external_account"]},
        })
        assert partial.payouts_enabled is False
        assert partial.onboarding_status == "pending"
        assert partial.details["requirements_due"] == ["external_account"]

    @pytest.mark.asyncio
    async def test_check_ready(self, stripe_key):
        def handler(request):
            assert request.url.path == "/v1/accounts/acct_1"
            return httpx.Response(200, json={"id": "acct_1", "charges_enabled": True, "payouts_enabled": True})

        rail = StripeConnectRail(transport=httpx.MockTransport(handler))
        status = await rail.check_ready(SimpleNamespace(external_account_id="acct_1"))
        assert status.payouts_enabled is True
        assert status.onboarding_status == "completed"

    @pytest.mark.asyncio
    async def test_revoked_account_not_ready(self, stripe_key):
        rail = StripeConnectRail(transport=httpx.MockTransport(lambda request: httpx.Response(404, json={})))
        status = await rail.check_ready(SimpleNamespace(external_account_id="acct_gone"))
        assert status.payouts_enabled is False
        assert status.onboarding_status == "failed"

    @pytest.mark.asyncio
    async def test_onboarding_creates_account_then_link(self, stripe_key, monkeypatch):
        monkeypatch.setattr(settings, "APP_BASE_URL", "https://shop.example")
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if request.url.path == "/v1/accounts":
                form = _form(request)
                assert form["type"] == "express"
                assert form["metadata[affiliate_code]"] == "ALICE01"
                return httpx.Response(200, json={"id": "acct_new"})
            form = _form(request)
            assert form["account"] == "acct_new"
            assert form["return_url"].startswith("https://shop.example/affiliate/payouts")
            return httpx.Response(200, json={"url": "https://connect.stripe.com/setup/e/acct_new"})

        rail = StripeConnectRail(transport=httpx.MockTransport(handler))
        affiliate = SimpleNamespace(id="aff-1", code="ALICE01", email="alice@partners.example")
        link = await rail.start_onboarding(affiliate, SimpleNamespace(external_account_id=None), state="s")

        assert calls == ["/v1/accounts", "/v1/account_links"]
        assert link.external_account_id == "acct_new"
        assert link.url == "https://connect.stripe.com/setup/e/acct_new"


# ── Mercado Pago ─────────────────────────────────────────────────────────────

class TestMercadoPago:
    @pytest.mark.asyncio
    async def test_authorization_url(self, mp_config):
        rail = MercadoPagoSplitRail()
        link = await rail.start_onboarding(
            SimpleNamespace(id="aff-1"), SimpleNamespace(external_account_id=None), state="signed-state",
        )
        query = parse_qs(urlparse(link.url).query)
        assert query["client_id"] == ["mp-client"]
        assert query["state"] == ["signed-state"]
        assert query["response_type"] == ["code"]
        assert query["redirect_uri"] == [
            "https://shop.example/api/v1/affiliate/payout-accounts/mercadopago_split/callback"
        ]

    @pytest.mark.asyncio
    async def test_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "MERCADOPAGO_CLIENT_ID", "")
        with pytest.raises(RailNotReady):
            await MercadoPagoSplitRail().start_onboarding(
                SimpleNamespace(id="aff-1"), SimpleNamespace(external_account_id=None), state="s",
            )

    def test_status_from_user(self):
        assert status_from_user({"status": "active", "site_status": "active"}).payouts_enabled is True
        assert status_from_user({"status": "active", "site_status": "deactive"}).payouts_enabled is False

    @pytest.mark.asyncio
    async def test_rejected_token_not_ready(self, mp_config):
        rail = MercadoPagoSplitRail(transport=httpx.MockTransport(lambda request: httpx.Response(401, json={})))
        status = await rail.check_ready(SimpleNamespace(external_account_id="987654", access_token="expired"))
        assert status.payouts_enabled is False
        assert status.details["reason"] == "token_invalid"

    @pytest.mark.asyncio
    async def test_transfer_sends_idempotency_key(self, mp_config):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 55501, "status": "approved"})

        rail = MercadoPagoSplitRail(transport=httpx.MockTransport(handler))
        result = await rail.transfer(_request(destination="987654"))

        assert result.transfer_id == "55501"
        assert captured["headers"]["X-Idempotency-Key"] == "commission_payout_c-123"
        assert captured["headers"]["Authorization"] == "Bearer APP_USR-platform"
        assert captured["body"]["amount"] == 20.0
        assert captured["body"]["collector_id"] == "987654"
        assert captured["body"]["external_reference"] == "commission_c-123"

    def test_transfer_request_carries_no_affiliate_credentials(self):
        assert "access_token" not in {f.name for f in dataclasses.fields(TransferRequest)}

    @pytest.mark.asyncio
    async def test_rejected_transfer_is_permanent(self, mp_config):
        rail = MercadoPagoSplitRail(transport=httpx.MockTransport(
            lambda request: httpx.Response(201, json={"id": 55502, "status": "rejected", "status_detail": "cc_rejected"})
        ))
        with pytest.raises(PermanentFailure):
            await rail.transfer(_request())

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, mp_config):
        rail = MercadoPagoSplitRail(transport=httpx.MockTransport(lambda request: httpx.Response(502, json={})))
        with pytest.raises(TransientFailure):
            await rail.transfer(_request())

    @pytest.mark.asyncio
    async def test_no_lookup(self, mp_config):
        rail = MercadoPagoSplitRail()
        assert rail.supports_lookup is False
        assert await rail.lookup_transfer(_request()) is None

    @pytest.mark.asyncio
    async def test_callback_without_code(self, mp_config):
        with pytest.raises(UserInputError):
            await MercadoPagoSplitRail().complete_onboarding(SimpleNamespace(), {"state": "s"})


# ── Manual + registry ────────────────────────────────────────────────────────

class TestManualRail:
    @pytest.mark.asyncio
    async def test_ready_with_pix_key(self):
        status = await ManualRail().check_ready(SimpleNamespace(details={"pix_key": "alice@pix"}))
        assert status.payouts_enabled is True

    @pytest.mark.asyncio
    async def test_not_ready_without_destination(self):
        status = await ManualRail().check_ready(SimpleNamespace(details=None))
        assert status.payouts_enabled is False

    @pytest.mark.asyncio
    async def test_never_moves_money(self):
        with pytest.raises(PermanentFailure):
            await ManualRail().transfer(_request())


class TestRegistry:
    def test_automated_rails(self):
        assert set(automated_rail_names()) == {"stripe_connect", "mercadopago_split"}
        assert get_rail("manual").automated is False
