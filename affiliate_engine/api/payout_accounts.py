"""Affiliate payout account onboarding: start, status, disconnect, OAuth callback."""
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.auth import require_affiliate
from affiliate_engine.db.engine import get_session
from affiliate_engine.db.tables import AffiliateRow
from affiliate_engine.errors import EngineError, RailError
from affiliate_engine.models import RailName
from affiliate_engine.services import payout_accounts as accounts
from affiliate_engine.services.affiliates import get_affiliate
from affiliate_engine.services.rails.registry import get_rail
from config.settings import settings

router = APIRouter(prefix="/api/v1/affiliate/payout-accounts", tags=["Payout Accounts"])
logger = logging.getLogger(__name__)


class ManualDetails(BaseModel):
    """Only used by the manual rail."""
    pix_key: Optional[str] = None
    pix_key_type: Optional[str] = None
    bank_account: Optional[str] = None
    holder_name: Optional[str] = None
    holder_document: Optional[str] = None


@router.get("")
async def list_payout_accounts(
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    return {
        "preferred_rail": affiliate.preferred_rail,
        "payment_automation_enabled": affiliate.payment_automation_enabled,
        "accounts": await accounts.list_accounts(session, affiliate.id),
    }


@router.get("/mercadopago_split/callback")
async def mercadopago_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    """OAuth redirect target; the signed state identifies the affiliate."""
    base = f"{settings.APP_BASE_URL.rstrip('/')}/affiliate/payouts"
    rail = RailName.MERCADOPAGO_SPLIT.value
    if error or not code:
        logger.info("Mercado Pago authorization declined: %s", error or "no code")
        return RedirectResponse(f"{base}?{urlencode({'rail': rail, 'status': 'declined'})}", status_code=302)
    try:
        _, status = await accounts.complete_oauth(session, rail, {"code": code, "state": state or ""})
    except EngineError as e:
        logger.warning("Mercado Pago callback failed: %s", e.message)
        return RedirectResponse(
            f"{base}?{urlencode({'rail': rail, 'status': 'error', 'reason': e.code})}", status_code=302,
        )
    outcome = "connected" if status.payouts_enabled else "pending"
    return RedirectResponse(f"{base}?{urlencode({'rail': rail, 'status': outcome})}", status_code=302)


@router.post("/{rail}/start")
async def start_onboarding(
    rail: str,
    details: Optional[ManualDetails] = None,
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    account, link = await accounts.record_onboarding_start(
        session, affiliate.id, rail,
        details=details.model_dump(exclude_none=True) if details else None,
    )
    return {
        "rail": account.rail,
        "url": link.url,
        "account": accounts.account_to_dict(account.rail, account, affiliate.preferred_rail == account.rail),
    }


@router.get("/{rail}/status")
async def payout_account_status(
    rail: str,
    refresh: bool = Query(True),
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    """Live readiness from the rail; falls back to the stored flags when the rail is unreachable."""
    get_rail(rail)
    affiliate_id = affiliate.id
    stale = False
    if refresh:
        try:
            await accounts.refresh_status(session, affiliate_id, rail)
        except RailError as e:
            logger.warning("Status check on %s failed for affiliate %s: %s", rail, affiliate_id, e.message)
            await session.rollback()
            stale = True
            affiliate = await get_affiliate(session, affiliate_id)
    account = await accounts.get_account(session, affiliate_id, rail)
    body = accounts.account_to_dict(rail, account, affiliate.preferred_rail == rail)
    body["stale"] = stale
    return body


@router.post("/{rail}/disconnect")
async def disconnect(
    rail: str,
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    account = await accounts.disconnect(session, affiliate.id, rail)
    return {
        "account": accounts.account_to_dict(rail, account),
        "preferred_rail": affiliate.preferred_rail,
        "payment_automation_enabled": affiliate.payment_automation_enabled,
    }
