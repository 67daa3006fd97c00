"""
Inbound webhooks: order payment events from checkout and Stripe Connect
account/transfer events.

Both are authenticated by HMAC before the body is parsed, and both are safe
to redeliver.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ValidationError
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.db.affiliate_tables import CommissionRow
from affiliate_engine.db.engine import get_session
from affiliate_engine.models import RailName
from affiliate_engine.services import commissions as ledger
from affiliate_engine.services.payout_accounts import apply_status_by_external_id
from affiliate_engine.services.rails.stripe_connect import status_from_account
from affiliate_engine.services.reconciliation import on_order_payment_event
from config.settings import settings

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])
logger = logging.getLogger(__name__)


class OrderPaymentEvent(BaseModel):
    order_id: str
    payment_state: str
    event_id: Optional[str] = None
    source: str = "checkout"


# ── Signatures ───────────────────────────────────────────────────────────────

def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA256 hex of the raw body."""
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def verify_stripe_signature(payload: bytes, sig_header: str, secret: str, tolerance: int = 300) -> dict:
    """Stripe v1 scheme: `t=<ts>,v1=<hex>` over "<ts>.<body>"; returns the parsed event."""
    if not secret:
        raise HTTPException(500, "Stripe webhook secret not configured")

    try:
        elements = dict(item.split("=", 1) for item in (sig_header or "").split(","))
    except ValueError:
        raise HTTPException(400, "Invalid Stripe signature header")
    timestamp = elements.get("t", "")
    signature = elements.get("v1", "")
    if not timestamp.isdigit() or not signature:
        raise HTTPException(400, "Missing timestamp or signature")

    if abs(time.time() - int(timestamp)) > tolerance:
        raise HTTPException(400, "Webhook timestamp too old")

    signed_payload = f"{timestamp}.{payload.decode('utf-8')}"
    expected = hmac.new(secret.encode("utf-8"), signed_payload.encode("utf-8"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise HTTPException(400, "Invalid signature")

    return json.loads(payload)


# ── Order payment events ─────────────────────────────────────────────────────

@router.post("/orders/payment")
async def order_payment_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session),
):
    body = await request.body()
    if settings.ORDER_WEBHOOK_SECRET:
        if not verify_webhook_signature(body, x_signature or "", settings.ORDER_WEBHOOK_SECRET):
            logger.warning("Invalid order webhook signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = OrderPaymentEvent.model_validate_json(body)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid event payload")

    result = await on_order_payment_event(
        session, event.order_id, event.payment_state,
        event_id=event.event_id, source=event.source, payload=json.loads(body),
    )
    logger.info("Order %s payment event %s -> %s", event.order_id, event.payment_state, result["action"])
    return {"received": True, **result}


# ── Stripe Connect ───────────────────────────────────────────────────────────

@router.post("/stripe/connect")
async def stripe_connect_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    session: AsyncSession = Depends(get_session),
):
    payload = await request.body()
    event = verify_stripe_signature(payload, stripe_signature or "", settings.STRIPE_CONNECT_WEBHOOK_SECRET)

    event_type = event.get("type", "")
    obj: dict[str, Any] = (event.get("data") or {}).get("object") or {}
    logger.info("Stripe Connect event %s (%s)", event_type, event.get("id"))

    if event_type == "account.updated" and obj.get("id"):
        await apply_status_by_external_id(
            session, RailName.STRIPE_CONNECT.value, obj["id"], status_from_account(obj),
        )
    elif event_type == "transfer.reversed":
        await _flag_reversed_transfer(session, obj)

    return {"received": True}


async def _flag_reversed_transfer(session: AsyncSession, transfer: dict) -> None:
    """A reversal never un-pays a commission; it puts it in front of an operator."""
    transfer_id = transfer.get("id")
    commission_id = (transfer.get("metadata") or {}).get("commission_id")
    result = await session.execute(
        select(CommissionRow).where(or_(
            CommissionRow.id == commission_id,
            CommissionRow.proof_reference == transfer_id,
        ))
    )
    commission = result.scalars().first()
    if commission is None:
        logger.info("Reversed transfer %s matches no commission", transfer_id)
        return
    note = f"Stripe transfer {transfer_id} reversed; manual follow-up required"
    if commission.notes and note in commission.notes:
        return
    logger.warning("Commission %s: %s", commission.id, note)
    await ledger.flag_for_review(session, commission.id, note)
