"""
Reconciliation listener for order payment events.

Deliveries may be duplicated or arrive out of order, so an event is treated
as a request to converge on the order's *current* state rather than a
command: the stored order is re-read and an event that disagrees with it is
logged as stale and ignored without consuming its event id, so a
redelivery after the order catches up is applied. Every action below is idempotent.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.db.affiliate_tables import CommissionRow, OrderPaymentEventRow
from affiliate_engine.db.tables import OrderRow
from affiliate_engine.errors import OrderNotFound, UserInputError
from affiliate_engine.models import CAPTURED_STATES, REVERSED_STATES, PaymentState
from affiliate_engine.services import commissions as ledger

logger = logging.getLogger(__name__)

CLAWBACK_NOTE = "Order reversed after payout; clawback required"


async def on_order_payment_event(
    session: AsyncSession,
    order_id: str,
    new_payment_state: str,
    event_id: Optional[str] = None,
    source: str = "checkout",
    payload: Optional[dict[str, Any]] = None,
) -> dict:
    """Apply one payment event. Returns {"action": ..., "commission_id": ...}."""
    try:
        state = PaymentState(new_payment_state).value
    except ValueError:
        raise UserInputError(f"Unknown payment state '{new_payment_state}'")

    if event_id and await _seen(session, event_id):
        logger.info("Payment event %s already processed", event_id)
        return {"action": "duplicate", "commission_id": None}

    order = await session.get(OrderRow, order_id, populate_existing=True)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)

    commission_id = None
    if order.payment_state != state:
        logger.info(
            "Stale payment event for order %s: says %s, order is %s",
            order_id, state, order.payment_state,
        )
        action = "stale"
    elif state in CAPTURED_STATES:
        action, commission_id = await _on_captured(session, order)
    elif state in REVERSED_STATES:
        action, commission_id = await _on_reversed(session, order, state)
    else:
        action = "noop"

    if action == "stale":
        # Stale deliveries do not consume their id; a redelivery is reapplied
        logged_id = None
        if event_id:
            payload = {**(payload or {}), "event_id": event_id}
    else:
        logged_id = event_id
    session.add(OrderPaymentEventRow(
        event_id=logged_id,
        order_id=order_id,
        payment_state=state,
        source=source,
        action=action,
        payload=payload,
    ))
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event id logged first
        await session.rollback()
        return {"action": "duplicate", "commission_id": commission_id}
    return {"action": action, "commission_id": commission_id}


async def _seen(session: AsyncSession, event_id: str) -> bool:
    result = await session.execute(
        select(OrderPaymentEventRow.id).where(OrderPaymentEventRow.event_id == event_id)
    )
    return result.scalar_one_or_none() is not None


async def _on_captured(session: AsyncSession, order: OrderRow) -> tuple[str, Optional[str]]:
    if not order.affiliate_id:
        return "noop", None
    existing = await ledger.find_commission_for_order(session, order.affiliate_id, order.id)
    if existing is not None:
        return "noop", existing.id
    commission = await ledger.create_commission_for_order(session, order.id)
    if commission is None:
        return "noop", None
    return "commission_created", commission.id


async def _on_reversed(session: AsyncSession, order: OrderRow, state: str) -> tuple[str, Optional[str]]:
    result = await session.execute(
        select(CommissionRow)
        .where(CommissionRow.order_id == order.id)
        .execution_options(populate_existing=True)
    )
    commission = result.scalars().first()
    if commission is None:
        return "noop", None

    if commission.status in (ledger.PENDING, ledger.APPROVED):
        await ledger.cancel_commission(session, commission.id, reason=f"order {state}")
        return "commission_cancelled", commission.id

    if commission.status == ledger.PAID:
        if not (commission.notes and CLAWBACK_NOTE in commission.notes):
            logger.warning(
                "Order %s %s after commission %s was paid; clawback required",
                order.id, state, commission.id,
            )
            await ledger.flag_for_review(session, commission.id, CLAWBACK_NOTE)
        return "clawback_required", commission.id

    return "noop", commission.id
