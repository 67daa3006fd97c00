"""Shared test fixtures: single in-memory DB for all test modules."""
from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# so every session sees the same database.
from sqlalchemy.pool import StaticPool

from config.settings import settings

settings.ADMIN_API_KEY = "test-admin-key"
settings.ORDER_WEBHOOK_SECRET = ""
settings.NOTIFICATION_WEBHOOK_URL = ""

from affiliate_engine.db.tables import Base, AffiliateRow, OrderRow  # noqa: E402
from affiliate_engine.db.affiliate_tables import PayoutAccountRow  # noqa: E402
from affiliate_engine.db.engine import get_session  # noqa: E402
from affiliate_engine.errors import TransientFailure  # noqa: E402
from affiliate_engine.models import utcnow  # noqa: E402
from affiliate_engine.services import notifications  # noqa: E402
from affiliate_engine.services.commissions import approve_commission, create_commission_for_order  # noqa: E402
from affiliate_engine.services.rails import registry  # noqa: E402
from affiliate_engine.services.rails.base import (  # noqa: E402
    OnboardingLink, PayoutRail, RailStatus, TransferRequest, TransferResult,
)

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from affiliate_engine.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

import affiliate_engine.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine

import affiliate_engine.api.main as _main_mod  # noqa: E402
_main_mod.engine = test_engine

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


# ── Fake rail ────────────────────────────────────────────────────────────────

class FakeRail(PayoutRail):
    """In-process stand-in for an automated rail.

    Deduplicates by idempotency key like a real rail, and counts transfer
    calls so tests can assert how many times money could have moved.
    """

    supports_lookup = True

    def __init__(self, name: str = "stripe_connect"):
        super().__init__()
        self.name = name
        self.automated = True
        self.ready = True
        self.delay = 0.0
        self.fail_with: Optional[Exception] = None
        self.lose_response = False
        self.transfers: dict[str, TransferResult] = {}
        self.transfer_calls = 0
        self.lookups = 0
        self.status_checks = 0

    async def start_onboarding(self, affiliate, account, state: str) -> OnboardingLink:
        return OnboardingLink(
            url=f"https://connect.example/onboard?state={state}",
            external_account_id=account.external_account_id or f"acct_{affiliate.code.lower()}",
        )

    async def check_ready(self, account) -> RailStatus:
        self.status_checks += 1
        if not account.external_account_id:
            return RailStatus(connected=False, payouts_enabled=False, onboarding_status="not_started")
        return RailStatus(
            connected=True,
            payouts_enabled=self.ready,
            onboarding_status="completed" if self.ready else "pending",
        )

    async def transfer(self, request: TransferRequest) -> TransferResult:
        self.transfer_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        result = self.transfers.get(request.idempotency_key)
        if result is None:
            result = TransferResult(
                transfer_id=f"tr_{len(self.transfers) + 1}",
                amount_minor=request.amount_minor,
                currency=request.currency,
            )
            self.transfers[request.idempotency_key] = result
        if self.lose_response:
            self.lose_response = False
            raise TransientFailure("fake rail timed out", rail_code="timeout", outcome_unknown=True)
        return result

    async def lookup_transfer(self, request: TransferRequest) -> Optional[TransferResult]:
        self.lookups += 1
        return self.transfers.get(request.idempotency_key)


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    import affiliate_engine.db.affiliate_tables  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    registry.reset_rails()
    notifications.clear_events()

    yield

    registry.reset_rails()
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def db_session():
    async with TestSession() as session:
        yield session


@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)


@pytest.fixture
def fake_rail():
    rail = FakeRail("stripe_connect")
    registry.register_rail(rail)
    return rail


@pytest.fixture
def make_affiliate():
    async def _make(
        session: AsyncSession,
        code: str = "ALICE01",
        status: str = "active",
        commission_type: str = "percent",
        commission_value: str = "20",
        affiliate_class: str = "standard",
        email: Optional[str] = None,
        custom_slug: Optional[str] = None,
    ) -> AffiliateRow:
        affiliate = AffiliateRow(
            code=code,
            custom_slug=custom_slug,
            name=f"Affiliate {code}",
            email=email or f"{code.lower()}@partners.example",
            affiliate_class=affiliate_class,
            status=status,
            commission_type=commission_type,
            commission_value=Decimal(commission_value),
        )
        session.add(affiliate)
        await session.commit()
        return affiliate
    return _make


@pytest.fixture
def make_order():
    async def _make(
        session: AsyncSession,
        affiliate_id: Optional[str] = None,
        total_minor: int = 10000,
        currency: str = "BRL",
        payment_state: str = "paid",
        customer_email: str = "buyer@shop.example",
        customer_ip: str = "203.0.113.7",
    ) -> OrderRow:
        order = OrderRow(
            total_minor=total_minor,
            currency=currency,
            payment_state=payment_state,
            customer_email=customer_email,
            customer_ip=customer_ip,
            affiliate_id=affiliate_id,
        )
        session.add(order)
        await session.commit()
        return order
    return _make


@pytest.fixture
def connect_rail():
    """Store a payout account as if onboarding had completed (or stalled)."""
    async def _connect(
        session: AsyncSession,
        affiliate: AffiliateRow,
        rail: str = "stripe_connect",
        external_account_id: str = "acct_test_1",
        ready: bool = True,
    ) -> PayoutAccountRow:
        account = PayoutAccountRow(
            affiliate_id=affiliate.id,
            rail=rail,
            external_account_id=external_account_id,
            connected=True,
            payouts_enabled=ready,
            onboarding_status="completed" if ready else "pending",
            onboarded_at=utcnow() if ready else None,
        )
        session.add(account)
        if ready:
            affiliate.preferred_rail = rail
            affiliate.payment_automation_enabled = True
        await session.commit()
        return account
    return _connect


@pytest.fixture
def approved_commission(make_affiliate, make_order):
    """Affiliate at 20% + paid 100.00 BRL order + approved commission."""
    async def _make(session: AsyncSession, code: str = "ALICE01", affiliate: Optional[AffiliateRow] = None):
        affiliate = affiliate or await make_affiliate(session, code=code)
        order = await make_order(session, affiliate_id=affiliate.id)
        commission = await create_commission_for_order(session, order.id)
        commission = await approve_commission(session, commission.id)
        return affiliate, commission
    return _make

