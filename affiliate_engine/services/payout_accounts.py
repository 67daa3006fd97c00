"""
Payout account registry: per affiliate, per rail readiness.

The preferred rail is changed only by defined rules:

  - the first time a rail goes not-ready → ready it becomes the preferred
    rail and automatic dispatch is switched on (automated rails only; the
    manual rail is adopted only when nothing is preferred yet)
  - disconnecting the preferred rail falls back to `manual`

Periodic status checks never move the preference otherwise.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.db.affiliate_tables import PayoutAccountRow
from affiliate_engine.db.tables import AffiliateRow
from affiliate_engine.errors import InvariantViolation, UserInputError
from affiliate_engine.models import AffiliateStatus, RailName, as_utc, utcnow
from affiliate_engine.services.affiliates import find_by_code_or_slug, get_affiliate
from affiliate_engine.services.attribution import sign_value, verify_value
from affiliate_engine.services.rails.base import OnboardingLink, RailStatus
from affiliate_engine.services.rails.registry import all_rails, get_rail

logger = logging.getLogger(__name__)

_OAUTH_STATE_TTL = timedelta(hours=1)
_MANUAL_DETAIL_KEYS = ("pix_key", "pix_key_type", "bank_account", "holder_name", "holder_document")


# ── OAuth state ──────────────────────────────────────────────────────────────

def make_oauth_state(affiliate_id: str, now: Optional[datetime] = None) -> str:
    return sign_value(affiliate_id, now)


def read_oauth_state(state: Optional[str], now: Optional[datetime] = None) -> str:
    verified = verify_value(state)
    if verified is None:
        raise UserInputError("Invalid onboarding state")
    affiliate_id, issued_at = verified
    if (now or utcnow()) - issued_at > _OAUTH_STATE_TTL:
        raise UserInputError("Onboarding link expired, start again")
    return affiliate_id


# ── Accounts ─────────────────────────────────────────────────────────────────

async def get_account(session: AsyncSession, affiliate_id: str, rail: str) -> Optional[PayoutAccountRow]:
    result = await session.execute(
        select(PayoutAccountRow).where(
            PayoutAccountRow.affiliate_id == affiliate_id,
            PayoutAccountRow.rail == rail,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _get_or_create_account(session: AsyncSession, affiliate_id: str, rail: str) -> PayoutAccountRow:
    account = await get_account(session, affiliate_id, rail)
    if account is not None:
        return account
    account = PayoutAccountRow(affiliate_id=affiliate_id, rail=rail, onboarding_status="not_started")
    session.add(account)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        account = await get_account(session, affiliate_id, rail)
        if account is None:
            raise
    return account


def _clean_manual_details(details: Optional[dict]) -> dict:
    details = {k: str(v).strip() for k, v in (details or {}).items() if k in _MANUAL_DETAIL_KEYS and v}
    if not details.get("pix_key") and not details.get("bank_account"):
        raise UserInputError("Manual payouts need a pix_key or bank_account")
    return details


async def record_onboarding_start(
    session: AsyncSession,
    affiliate_id: str,
    rail_name: str,
    details: Optional[dict] = None,
) -> tuple[PayoutAccountRow, OnboardingLink]:
    """Create (or resume) the account for a rail and return where to send the affiliate."""
    rail = get_rail(rail_name)
    affiliate = await get_affiliate(session, affiliate_id)
    account = await _get_or_create_account(session, affiliate.id, rail.name)

    if not rail.automated:
        account.details = _clean_manual_details(details)
        link = await rail.start_onboarding(affiliate, account, state="")
        await session.commit()
        await _apply_and_commit(session, affiliate, account, await rail.check_ready(account))
        return account, link

    link = await rail.start_onboarding(affiliate, account, state=make_oauth_state(affiliate.id))
    if link.external_account_id and link.external_account_id != account.external_account_id:
        account.external_account_id = link.external_account_id
    if account.onboarding_status != "completed":
        account.onboarding_status = "pending"
    await session.commit()
    logger.info("Affiliate %s started %s onboarding", affiliate.id, rail.name)
    return account, link


async def complete_oauth(
    session: AsyncSession, rail_name: str, params: dict[str, str],
) -> tuple[PayoutAccountRow, RailStatus]:
    """OAuth callback: store the granted credentials, then check readiness."""
    rail = get_rail(rail_name)
    affiliate_id = read_oauth_state(params.get("state"))
    affiliate = await get_affiliate(session, affiliate_id)
    account = await _get_or_create_account(session, affiliate.id, rail.name)

    grant = await rail.complete_onboarding(account, params)
    account.external_account_id = grant.external_account_id
    account.access_token = grant.access_token
    if grant.refresh_token:
        account.details = {**(account.details or {}), "refresh_token": grant.refresh_token}
    account.onboarding_status = "pending"
    await session.commit()
    logger.info("Affiliate %s connected %s account %s", affiliate.id, rail.name, grant.external_account_id)

    status = await rail.check_ready(account)
    await _apply_and_commit(session, affiliate, account, status)
    return account, status


async def refresh_status(session: AsyncSession, affiliate_id: str, rail_name: str) -> RailStatus:
    """Ask the rail for live readiness and store it. Rail errors propagate."""
    rail = get_rail(rail_name)
    affiliate = await get_affiliate(session, affiliate_id)
    account = await get_account(session, affiliate.id, rail.name)
    if account is None:
        return RailStatus(connected=False, payouts_enabled=False, onboarding_status="not_started")
    status = await rail.check_ready(account)
    await _apply_and_commit(session, affiliate, account, status)
    return status


async def apply_status_by_external_id(
    session: AsyncSession, rail_name: str, external_account_id: str, status: RailStatus,
) -> Optional[PayoutAccountRow]:
    """Webhook path (e.g. Stripe account.updated): same rules as refresh_status."""
    result = await session.execute(
        select(PayoutAccountRow).where(
            PayoutAccountRow.rail == rail_name,
            PayoutAccountRow.external_account_id == external_account_id,
        )
    )
    account = result.scalar_one_or_none()
    if account is None:
        logger.info("No %s account for %s, status update ignored", rail_name, external_account_id)
        return None
    affiliate = await get_affiliate(session, account.affiliate_id)
    await _apply_and_commit(session, affiliate, account, status)
    return account


async def _apply_and_commit(
    session: AsyncSession, affiliate: AffiliateRow, account: PayoutAccountRow, status: RailStatus,
) -> None:
    apply_status(affiliate, account, status)
    await session.commit()


def apply_status(
    affiliate: AffiliateRow,
    account: PayoutAccountRow,
    status: RailStatus,
    now: Optional[datetime] = None,
) -> bool:
    """Store observed readiness. Returns True when this was the rail's first time ready."""
    now = now or utcnow()
    rail = get_rail(account.rail)
    first_time_ready = status.payouts_enabled and account.onboarded_at is None

    if status.payouts_enabled and rail.automated and not account.external_account_id:
        raise InvariantViolation(
            f"{account.rail} reported ready without an external account id",
            affiliate_id=affiliate.id, rail=account.rail,
        )

    account.connected = status.connected
    account.payouts_enabled = status.payouts_enabled
    account.onboarding_status = status.onboarding_status
    account.last_checked_at = now

    if first_time_ready:
        account.onboarded_at = now
        if rail.automated:
            affiliate.preferred_rail = rail.name
            affiliate.payment_automation_enabled = True
            logger.info("Affiliate %s: %s ready, now preferred rail", affiliate.id, rail.name)
        elif affiliate.preferred_rail is None:
            affiliate.preferred_rail = rail.name
            affiliate.payment_automation_enabled = False
    return first_time_ready


async def disconnect(session: AsyncSession, affiliate_id: str, rail_name: str) -> PayoutAccountRow:
    """Forget the rail's credentials; a preferred rail falls back to manual."""
    rail = get_rail(rail_name)
    affiliate = await get_affiliate(session, affiliate_id)
    account = await get_account(session, affiliate.id, rail.name)
    if account is None:
        raise UserInputError(f"No {rail.name} account connected")

    account.external_account_id = None
    account.access_token = None
    account.details = None
    account.connected = False
    account.payouts_enabled = False
    account.onboarding_status = "not_started"
    account.onboarded_at = None
    account.last_checked_at = utcnow()

    if affiliate.preferred_rail == rail.name:
        affiliate.preferred_rail = RailName.MANUAL.value
        affiliate.payment_automation_enabled = False
    await session.commit()
    logger.info("Affiliate %s disconnected %s", affiliate.id, rail.name)
    return account


# ── Views ────────────────────────────────────────────────────────────────────

async def list_accounts(session: AsyncSession, affiliate_id: str) -> list[dict]:
    affiliate = await get_affiliate(session, affiliate_id)
    result = await session.execute(
        select(PayoutAccountRow).where(PayoutAccountRow.affiliate_id == affiliate.id)
    )
    by_rail = {a.rail: a for a in result.scalars().all()}
    out = []
    for rail in all_rails():
        account = by_rail.get(rail.name)
        out.append(account_to_dict(rail.name, account, preferred=affiliate.preferred_rail == rail.name))
    return out


def account_to_dict(rail: str, account: Optional[PayoutAccountRow], preferred: bool = False) -> dict:
    if account is None:
        return {
            "rail": rail, "connected": False, "payouts_enabled": False,
            "onboarding_status": "not_started", "external_account_id": None,
            "preferred": preferred, "last_checked_at": None,
        }
    checked = as_utc(account.last_checked_at)
    return {
        "rail": rail,
        "connected": account.connected,
        "payouts_enabled": account.payouts_enabled,
        "onboarding_status": account.onboarding_status,
        "external_account_id": account.external_account_id,
        "preferred": preferred,
        "last_checked_at": checked.isoformat() if checked else None,
    }


_ALL_METHODS = {"pix": True, "mercadopago_card": True, "paypal": True, "stripe": True}


async def viable_payment_methods(session: AsyncSession, code: Optional[str]) -> dict:
    """Buyer payment options that still route the commission to the affiliate.

    PayPal has no split payment, so it is never offered on an affiliate sale.
    """
    affiliate = await find_by_code_or_slug(session, code) if code else None
    if affiliate is None or affiliate.status != AffiliateStatus.ACTIVE.value:
        return {"has_affiliate": False, "methods": dict(_ALL_METHODS)}

    result = await session.execute(
        select(PayoutAccountRow).where(PayoutAccountRow.affiliate_id == affiliate.id)
    )
    ready = {
        a.rail for a in result.scalars().all()
        if a.payouts_enabled and a.external_account_id
    }
    has_mp = RailName.MERCADOPAGO_SPLIT.value in ready
    has_stripe = RailName.STRIPE_CONNECT.value in ready
    return {
        "has_affiliate": True,
        "affiliate_code": affiliate.code,
        "methods": {
            "pix": has_mp,
            "mercadopago_card": has_mp,
            "paypal": False,
            "stripe": has_stripe,
        },
        "auto_split": {"stripe": has_stripe, "mercadopago": has_mp},
    }
