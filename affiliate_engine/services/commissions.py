"""
Commission ledger.

    pending ──approve──▶ approved ──paid (proof)──▶ paid
       │                    │
       └──────cancel────────┴──▶ cancelled

`paid` and `cancelled` are terminal. Amount and rate are snapshotted at
creation and never rewritten. Every transition is a conditional UPDATE on the
current status, so concurrent callers (operator double-click, webhook replay)
see either the transition or a clean no-op.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import and_, func, or_, select, true, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.db.affiliate_tables import CommissionRow, PayoutAttemptRow
from affiliate_engine.db.tables import AffiliateRow, OrderRow
from affiliate_engine.errors import (
    AlreadyPaid, ClawbackRequired, CommissionNotFound, InvalidTransition,
    InvariantViolation, NotApproved, OrderNotFound, PayoutInProgress, PreconditionError,
)
from affiliate_engine.models import (
    AffiliateClass, AffiliateStatus, CAPTURED_STATES, CommissionStatus, CommissionType,
    PayoutOutcome, RailName, as_utc, format_minor, minor_unit_exponent, utcnow,
)
from affiliate_engine.services import notifications
from affiliate_engine.services.fraud import screen_commission
from config.settings import settings

logger = logging.getLogger(__name__)

PENDING = CommissionStatus.PENDING.value
APPROVED = CommissionStatus.APPROVED.value
PAID = CommissionStatus.PAID.value
CANCELLED = CommissionStatus.CANCELLED.value


def idempotency_key_for(commission_id: str) -> str:
    return f"commission_payout_{commission_id}"


# ── Amount ───────────────────────────────────────────────────────────────────

def compute_commission_amount(
    order_total_minor: int, currency: str, commission_type: str, value: Decimal,
) -> int:
    """Commission in minor units: round half-up, then clamp into [0, total]."""
    value = Decimal(str(value))
    if commission_type == CommissionType.PERCENT.value:
        raw = Decimal(order_total_minor) * value / Decimal(100)
    elif commission_type == CommissionType.FIXED.value:
        raw = value.scaleb(minor_unit_exponent(currency))
    else:
        raise InvariantViolation(f"Unknown commission type {commission_type!r}")
    amount = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, min(amount, order_total_minor))


# ── Claims ───────────────────────────────────────────────────────────────────

def claim_cutoff(now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) - timedelta(seconds=settings.PAYOUT_CLAIM_LEASE_SECONDS)


def no_live_claim(now: Optional[datetime] = None):
    """SQL condition: nobody holds an unexpired dispatch claim."""
    return or_(
        CommissionRow.payout_claim_token.is_(None),
        CommissionRow.payout_claimed_at.is_(None),
        CommissionRow.payout_claimed_at < claim_cutoff(now),
    )


# ── Reads ────────────────────────────────────────────────────────────────────

async def get_commission(session: AsyncSession, commission_id: str) -> CommissionRow:
    commission = await session.get(CommissionRow, commission_id)
    if commission is None:
        raise CommissionNotFound(f"Commission {commission_id} not found", commission_id=commission_id)
    return commission


async def reload_commission(session: AsyncSession, commission_id: str) -> CommissionRow:
    commission = await session.get(CommissionRow, commission_id, populate_existing=True)
    if commission is None:
        raise CommissionNotFound(f"Commission {commission_id} not found", commission_id=commission_id)
    return commission


async def get_commission_with_attempts(
    session: AsyncSession, commission_id: str,
) -> tuple[CommissionRow, list[PayoutAttemptRow]]:
    commission = await get_commission(session, commission_id)
    result = await session.execute(
        select(PayoutAttemptRow)
        .where(PayoutAttemptRow.commission_id == commission_id)
        .order_by(PayoutAttemptRow.created_at)
    )
    return commission, list(result.scalars().all())


async def find_commission_for_order(
    session: AsyncSession, affiliate_id: str, order_id: str,
) -> Optional[CommissionRow]:
    result = await session.execute(
        select(CommissionRow).where(
            CommissionRow.affiliate_id == affiliate_id,
            CommissionRow.order_id == order_id,
        )
    )
    return result.scalar_one_or_none()


async def list_commissions(
    session: AsyncSession,
    status: Optional[str] = None,
    affiliate_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[CommissionRow], dict]:
    """Filtered page of commissions plus count/amount per status over the same filter."""
    filters = []
    if status:
        filters.append(CommissionRow.status == status)
    if affiliate_id:
        filters.append(CommissionRow.affiliate_id == affiliate_id)
    if start:
        filters.append(CommissionRow.created_at >= start)
    if end:
        filters.append(CommissionRow.created_at <= end)
    where = and_(*filters) if filters else true()

    rows = (await session.execute(
        select(CommissionRow)
        .where(where)
        .order_by(CommissionRow.created_at.desc())
        .limit(limit)
        .offset(offset)
    )).scalars().all()

    grouped = await session.execute(
        select(
            CommissionRow.status, CommissionRow.currency,
            func.count(CommissionRow.id), func.sum(CommissionRow.amount_minor),
        )
        .where(where)
        .group_by(CommissionRow.status, CommissionRow.currency)
    )
    stats: dict = {"total": 0, "by_status": {}}
    for st, currency, count, amount in grouped.all():
        bucket = stats["by_status"].setdefault(st, {"count": 0, "amounts": {}})
        bucket["count"] += count
        bucket["amounts"][currency] = format_minor(int(amount or 0), currency)
        stats["total"] += count
    return list(rows), stats


# ── Creation ─────────────────────────────────────────────────────────────────

async def create_commission_for_order(
    session: AsyncSession, order_id: str, now: Optional[datetime] = None,
) -> Optional[CommissionRow]:
    """Create the pending commission for a captured order. Idempotent per (affiliate, order).

    Returns None when the order earns nothing (no affiliate, licensed or
    inactive affiliate).
    """
    order = await session.get(OrderRow, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
    if not order.affiliate_id:
        return None
    if order.payment_state not in CAPTURED_STATES:
        raise PreconditionError(
            f"Order {order_id} is {order.payment_state}, commissions need captured funds",
            order_id=order_id,
        )

    existing = await find_commission_for_order(session, order.affiliate_id, order_id)
    if existing is not None:
        return existing

    affiliate = await session.get(AffiliateRow, order.affiliate_id)
    if affiliate is None:
        raise InvariantViolation(
            f"Order {order_id} references missing affiliate {order.affiliate_id}",
            order_id=order_id, affiliate_id=order.affiliate_id,
        )
    if affiliate.affiliate_class == AffiliateClass.LICENSED.value:
        logger.info("Order %s: licensed affiliate %s earns no commission", order_id, affiliate.id)
        return None
    if affiliate.status != AffiliateStatus.ACTIVE.value:
        logger.info("Order %s: affiliate %s is %s, no commission", order_id, affiliate.id, affiliate.status)
        return None

    amount = compute_commission_amount(
        order.total_minor, order.currency, affiliate.commission_type, affiliate.commission_value,
    )
    fraud = await screen_commission(session, affiliate, order, now=now)

    commission = CommissionRow(
        affiliate_id=affiliate.id,
        order_id=order_id,
        order_total_minor=order.total_minor,
        currency=order.currency.upper(),
        commission_type=affiliate.commission_type,
        commission_value=affiliate.commission_value,
        amount_minor=amount,
        status=PENDING,
        risk_score=fraud.risk_score,
        requires_manual_review=fraud.is_suspicious,
        notes=("Fraud screening: " + "; ".join(fraud.reasons)) if fraud.is_suspicious else None,
    )
    if now is not None:
        commission.created_at = now
    session.add(commission)
    try:
        await session.commit()
    except IntegrityError:
        # Lost the race to a concurrent trigger for the same order
        await session.rollback()
        existing = await find_commission_for_order(session, affiliate.id, order_id)
        if existing is None:
            logger.error("Commission insert for order %s failed without a winner", order_id)
            raise
        return existing

    logger.info(
        "Commission %s created: %s %s for order %s",
        commission.id, format_minor(amount, commission.currency), commission.currency, order_id,
    )
    return commission


# ── Transitions ──────────────────────────────────────────────────────────────

async def approve_commission(
    session: AsyncSession, commission_id: str, approved_by: str = "admin",
) -> CommissionRow:
    """pending → approved. Already approved or paid is a no-op."""
    now = utcnow()
    result = await session.execute(
        update(CommissionRow)
        .where(CommissionRow.id == commission_id, CommissionRow.status == PENDING)
        .values(status=APPROVED, approved_at=now, approved_by=approved_by, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    commission = await reload_commission(session, commission_id)

    if result.rowcount == 1:
        logger.info("Commission %s approved by %s", commission_id, approved_by)
        notifications.fire_event(
            "commission.approved",
            commission_id=commission.id, affiliate_id=commission.affiliate_id,
            amount=format_minor(commission.amount_minor, commission.currency),
            currency=commission.currency,
        )
        return commission
    if commission.status == CANCELLED:
        raise InvalidTransition(f"Commission {commission_id} is cancelled", commission_id=commission_id)
    return commission


async def cancel_commission(
    session: AsyncSession, commission_id: str, reason: str = "cancelled by operator",
) -> CommissionRow:
    """pending|approved → cancelled. Paid needs a clawback; cancelled is a no-op."""
    now = utcnow()
    result = await session.execute(
        update(CommissionRow)
        .where(
            CommissionRow.id == commission_id,
            CommissionRow.status.in_([PENDING, APPROVED]),
            no_live_claim(now),
        )
        .values(status=CANCELLED, cancelled_at=now, cancel_reason=reason[:200], updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    commission = await reload_commission(session, commission_id)

    if result.rowcount == 1:
        logger.info("Commission %s cancelled: %s", commission_id, reason)
        notifications.fire_event(
            "commission.cancelled",
            commission_id=commission.id, affiliate_id=commission.affiliate_id, reason=reason,
        )
        return commission
    if commission.status == CANCELLED:
        return commission
    if commission.status == PAID:
        raise ClawbackRequired(
            f"Commission {commission_id} is already paid; reversing it needs a clawback",
            commission_id=commission_id,
        )
    raise PayoutInProgress(f"Commission {commission_id} has a payout in flight", commission_id=commission_id)


async def mark_paid(
    session: AsyncSession,
    commission_id: str,
    proof_reference: Optional[str],
    payment_method: str = RailName.MANUAL.value,
    notes: Optional[str] = None,
) -> CommissionRow:
    """approved → paid with an out-of-band proof (manual bank/PIX settlement)."""
    if not proof_reference or not proof_reference.strip():
        logger.error("Refusing to mark commission %s paid without proof", commission_id)
        raise InvariantViolation(
            "A paid commission requires a proof reference", commission_id=commission_id,
        )
    proof_reference = proof_reference.strip()[:500]
    commission = await get_commission(session, commission_id)
    now = utcnow()

    values = dict(
        status=PAID, paid_at=now, payment_method=payment_method, proof_reference=proof_reference,
        requires_manual_review=False, payout_claim_token=None, payout_claimed_at=None,
        updated_at=now,
    )
    if notes:
        values["notes"] = f"{commission.notes}\n{notes}" if commission.notes else notes

    result = await session.execute(
        update(CommissionRow)
        .where(CommissionRow.id == commission_id, CommissionRow.status == APPROVED, no_live_claim(now))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        session.add(PayoutAttemptRow(
            commission_id=commission_id,
            rail=payment_method,
            outcome=PayoutOutcome.SUCCESS.value,
            idempotency_key=idempotency_key_for(commission_id),
            transfer_id=proof_reference,
            amount_minor=commission.amount_minor,
            currency=commission.currency,
        ))
    await session.commit()
    commission = await reload_commission(session, commission_id)

    if result.rowcount == 1:
        logger.info("Commission %s marked paid manually (%s)", commission_id, proof_reference)
        notify_paid(commission)
        return commission
    _raise_for_unpayable(commission)
    raise PayoutInProgress(f"Commission {commission_id} has a payout in flight", commission_id=commission_id)


def _raise_for_unpayable(commission: CommissionRow) -> None:
    if commission.status == PAID:
        raise AlreadyPaid(f"Commission {commission.id} is already paid", commission_id=commission.id)
    if commission.status == PENDING:
        raise NotApproved(f"Commission {commission.id} is not approved", commission_id=commission.id)
    if commission.status == CANCELLED:
        raise InvalidTransition(f"Commission {commission.id} is cancelled", commission_id=commission.id)


def notify_paid(commission: CommissionRow) -> None:
    notifications.fire_event(
        "commission.paid",
        commission_id=commission.id, affiliate_id=commission.affiliate_id,
        amount=format_minor(commission.amount_minor, commission.currency),
        currency=commission.currency, payment_method=commission.payment_method,
        proof_reference=commission.proof_reference,
    )


async def flag_for_review(
    session: AsyncSession, commission_id: str, note: str, error: Optional[str] = None,
) -> None:
    """Append an operator note and raise the manual-review flag (no status change)."""
    commission = await reload_commission(session, commission_id)
    stamped = f"[{utcnow().isoformat(timespec='seconds')}] {note}"
    values = dict(
        requires_manual_review=True,
        notes=f"{commission.notes}\n{stamped}" if commission.notes else stamped,
    )
    if error is not None:
        values["last_payout_error"] = error
    await session.execute(
        update(CommissionRow)
        .where(CommissionRow.id == commission_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


# ── Serialization ────────────────────────────────────────────────────────────

def _iso(dt: Optional[datetime]) -> Optional[str]:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def commission_to_dict(c: CommissionRow) -> dict:
    return {
        "id": c.id,
        "affiliate_id": c.affiliate_id,
        "order_id": c.order_id,
        "order_total": format_minor(c.order_total_minor, c.currency),
        "currency": c.currency,
        "commission_type": c.commission_type,
        "commission_value": str(c.commission_value),
        "amount": format_minor(c.amount_minor, c.currency),
        "amount_minor": c.amount_minor,
        "status": c.status,
        "payment_method": c.payment_method,
        "proof_reference": c.proof_reference,
        "notes": c.notes,
        "risk_score": c.risk_score,
        "requires_manual_review": c.requires_manual_review,
        "last_payout_error": c.last_payout_error,
        "payout_attempt_count": c.payout_attempt_count,
        "created_at": _iso(c.created_at),
        "approved_at": _iso(c.approved_at),
        "paid_at": _iso(c.paid_at),
        "cancelled_at": _iso(c.cancelled_at),
    }


def attempt_to_dict(a: PayoutAttemptRow) -> dict:
    return {
        "id": a.id,
        "rail": a.rail,
        "outcome": a.outcome,
        "idempotency_key": a.idempotency_key,
        "transfer_id": a.transfer_id,
        "amount": format_minor(a.amount_minor, a.currency),
        "currency": a.currency,
        "error": a.error,
        "outcome_unknown": a.outcome_unknown,
        "created_at": _iso(a.created_at),
    }
