"""
Payout dispatcher.

    dispatch(commission_id)
      1. status gate        paid → AlreadyPaid, not approved → NotApproved
      2. claim              conditional UPDATE sets a claim token with a lease;
                            only one caller at a time gets past this point
      3. rail selection     preferred automated rail, live refresh if stale
      4. lookup             rails that can list transfers are asked first
                            when an earlier attempt ended in doubt
      5. transfer           idempotency key commission_payout_<id>
      6. finalize           approved → paid, guarded by the claim token

The status gate plus the claim are the in-database safety net; the rail
idempotency key is the second, independent one. Failed payouts never cancel
a commission: the money is still owed.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.db.affiliate_tables import CommissionRow, PayoutAttemptRow
from affiliate_engine.db.tables import AffiliateRow
from affiliate_engine.errors import (
    InvariantViolation, PermanentFailure, RailNotReady, TransientFailure,
)
from affiliate_engine.models import DispatchReason, PayoutOutcome, format_minor, utcnow
from affiliate_engine.services import payout_accounts
from affiliate_engine.services.commissions import (
    APPROVED, PAID, reload_commission, get_commission, idempotency_key_for, no_live_claim, notify_paid,
)
from affiliate_engine.services.rails.base import PayoutRail, TransferRequest, TransferResult
from affiliate_engine.services.rails.registry import all_rails

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    success: bool
    commission_id: str
    transfer_id: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    rail: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    requires_manual_review: bool = False

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _fail(commission_id: str, reason: DispatchReason, message: str, **kw) -> DispatchResult:
    return DispatchResult(success=False, commission_id=commission_id, reason=reason.value, message=message, **kw)


@dataclass
class _Selection:
    rail: Optional[PayoutRail] = None
    account: object = None
    reason: Optional[DispatchReason] = None
    message: str = ""


# ── Public entry points ──────────────────────────────────────────────────────

async def dispatch(session: AsyncSession, commission_id: str, now: Optional[datetime] = None) -> DispatchResult:
    """Try to settle one approved commission. Safe to call any number of times."""
    now = now or utcnow()
    commission = await get_commission(session, commission_id)
    gate = _status_gate(commission)
    if gate is not None:
        return gate

    token = str(uuid.uuid4())
    claimed = await session.execute(
        update(CommissionRow)
        .where(CommissionRow.id == commission_id, CommissionRow.status == APPROVED, no_live_claim(now))
        .values(
            payout_claim_token=token,
            payout_claimed_at=now,
            payout_attempt_count=CommissionRow.payout_attempt_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if claimed.rowcount != 1:
        commission = await reload_commission(session, commission_id)
        gate = _status_gate(commission)
        if gate is not None:
            return gate
        logger.info("Commission %s: another dispatch holds the claim", commission_id)
        return _fail(commission_id, DispatchReason.TRANSIENT_FAILURE, "Payout dispatch already in progress")

    try:
        commission = await reload_commission(session, commission_id)
        return await _dispatch_claimed(session, commission, token)
    except Exception:
        await session.rollback()
        await _release_claim(session, commission_id, token)
        await session.commit()
        raise


async def dispatch_approved_batch(session: AsyncSession, limit: int = 50) -> dict:
    """Scheduled sweep over approved commissions that are not waiting on an operator."""
    now = utcnow()
    result = await session.execute(
        select(CommissionRow.id)
        .where(
            CommissionRow.status == APPROVED,
            CommissionRow.requires_manual_review.is_(False),
            no_live_claim(now),
        )
        .order_by(CommissionRow.approved_at)
        .limit(limit)
    )
    ids = list(result.scalars().all())

    summary: dict = {"processed": 0, "paid": 0, "failed": {}, "results": []}
    for commission_id in ids:
        outcome = await dispatch(session, commission_id)
        summary["processed"] += 1
        if outcome.success:
            summary["paid"] += 1
        else:
            summary["failed"][outcome.reason] = summary["failed"].get(outcome.reason, 0) + 1
        summary["results"].append(outcome.to_dict())
    logger.info("Payout batch: %d processed, %d paid", summary["processed"], summary["paid"])
    return summary


# ── Steps ────────────────────────────────────────────────────────────────────

def _status_gate(commission: CommissionRow) -> Optional[DispatchResult]:
    if commission.status == PAID:
        return _fail(
            commission.id, DispatchReason.ALREADY_PAID, "Commission already paid",
            transfer_id=commission.proof_reference, rail=commission.payment_method,
        )
    if commission.status != APPROVED:
        return _fail(commission.id, DispatchReason.NOT_APPROVED, f"Commission is {commission.status}")
    return None


async def _dispatch_claimed(session: AsyncSession, commission: CommissionRow, token: str) -> DispatchResult:
    affiliate = await session.get(AffiliateRow, commission.affiliate_id, populate_existing=True)
    if affiliate is None:
        raise InvariantViolation(
            f"Commission {commission.id} references missing affiliate",
            commission_id=commission.id, affiliate_id=commission.affiliate_id,
        )

    try:
        selection = await _select_rail(session, affiliate)
    except TransientFailure as e:
        return await _record_failure(session, commission, token, "none", PayoutOutcome.TRANSIENT_FAILURE, e)

    if selection.reason == DispatchReason.RAIL_NOT_READY:
        return await _record_failure(
            session, commission, token, affiliate.preferred_rail or "none",
            PayoutOutcome.RAIL_NOT_READY, RailNotReady(selection.message),
        )
    if selection.reason == DispatchReason.NEEDS_ONBOARDING:
        return await _record_failure(
            session, commission, token, selection.rail.name if selection.rail else "none",
            PayoutOutcome.NEEDS_ONBOARDING, RailNotReady(selection.message),
        )

    rail, account = selection.rail, selection.account
    request = TransferRequest(
        commission_id=commission.id,
        amount_minor=commission.amount_minor,
        currency=commission.currency,
        destination=account.external_account_id,
        idempotency_key=idempotency_key_for(commission.id),
        description=f"Affiliate commission for order {commission.order_id}",
    )

    try:
        found = None
        if rail.supports_lookup and await _had_doubtful_attempt(session, commission.id, rail.name):
            found = await rail.lookup_transfer(request)
            if found is not None:
                logger.info(
                    "Commission %s: transfer %s found on %s, not resending",
                    commission.id, found.transfer_id, rail.name,
                )
        result = found or await rail.transfer(request)
    except TransientFailure as e:
        return await _record_failure(session, commission, token, rail.name, PayoutOutcome.TRANSIENT_FAILURE, e)
    except PermanentFailure as e:
        return await _record_failure(session, commission, token, rail.name, PayoutOutcome.PERMANENT_FAILURE, e)
    except RailNotReady as e:
        return await _record_failure(session, commission, token, rail.name, PayoutOutcome.RAIL_NOT_READY, e)

    return await _finalize(session, commission, token, rail, result)


async def _select_rail(session: AsyncSession, affiliate: AffiliateRow) -> _Selection:
    preferred = affiliate.preferred_rail
    automated = {r.name: r for r in all_rails() if r.automated}

    if preferred in automated and affiliate.payment_automation_enabled:
        candidates = [automated[preferred]]
    elif preferred is None:
        candidates = list(automated.values())
    else:
        return _Selection(
            reason=DispatchReason.RAIL_NOT_READY,
            message=f"Affiliate is paid via {preferred}; settle manually and record the proof",
        )

    onboarding: Optional[PayoutRail] = None
    for rail in candidates:
        account = await payout_accounts.get_account(session, affiliate.id, rail.name)
        if account is None or not account.external_account_id:
            if preferred == rail.name:
                onboarding = rail
            continue
        if not account.payouts_enabled:
            # Stored flag may lag behind the rail; ask once before giving up
            try:
                status = await rail.check_ready(account)
            except (PermanentFailure, RailNotReady) as e:
                logger.info("%s status check for affiliate %s failed: %s", rail.name, affiliate.id, e)
            else:
                payout_accounts.apply_status(affiliate, account, status)
                await session.commit()
        if account.payouts_enabled:
            # A rail turning ready for the first time switches automation on; anything else needs the flag
            if not affiliate.payment_automation_enabled:
                return _Selection(
                    reason=DispatchReason.RAIL_NOT_READY,
                    message="Payment automation is off for this affiliate; settle manually and record the proof",
                )
            return _Selection(rail=rail, account=account)
        onboarding = onboarding or rail

    if onboarding is not None:
        return _Selection(
            rail=onboarding,
            reason=DispatchReason.NEEDS_ONBOARDING,
            message=f"{onboarding.name} account is not ready to receive payouts; finish onboarding",
        )
    return _Selection(
        reason=DispatchReason.RAIL_NOT_READY,
        message="No automated payout rail connected; settle manually and record the proof",
    )


async def _had_doubtful_attempt(session: AsyncSession, commission_id: str, rail: str) -> bool:
    result = await session.execute(
        select(PayoutAttemptRow.id).where(
            PayoutAttemptRow.commission_id == commission_id,
            PayoutAttemptRow.rail == rail,
            PayoutAttemptRow.outcome == PayoutOutcome.TRANSIENT_FAILURE.value,
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _release_claim(session: AsyncSession, commission_id: str, token: str, **values) -> None:
    await session.execute(
        update(CommissionRow)
        .where(CommissionRow.id == commission_id, CommissionRow.payout_claim_token == token)
        .values(payout_claim_token=None, payout_claimed_at=None, **values)
        .execution_options(synchronize_session=False)
    )


_REASONS = {
    PayoutOutcome.RAIL_NOT_READY: DispatchReason.RAIL_NOT_READY,
    PayoutOutcome.NEEDS_ONBOARDING: DispatchReason.NEEDS_ONBOARDING,
    PayoutOutcome.TRANSIENT_FAILURE: DispatchReason.TRANSIENT_FAILURE,
    PayoutOutcome.PERMANENT_FAILURE: DispatchReason.PERMANENT_FAILURE,
}


async def _record_failure(
    session: AsyncSession,
    commission: CommissionRow,
    token: str,
    rail: str,
    outcome: PayoutOutcome,
    error: Exception,
) -> DispatchResult:
    """Log the attempt and release the claim. The commission stays approved."""
    message = getattr(error, "message", None) or str(error)
    manual_review = outcome in (PayoutOutcome.PERMANENT_FAILURE, PayoutOutcome.RAIL_NOT_READY)

    session.add(PayoutAttemptRow(
        commission_id=commission.id,
        rail=rail,
        outcome=outcome.value,
        idempotency_key=idempotency_key_for(commission.id),
        amount_minor=commission.amount_minor,
        currency=commission.currency,
        error=message[:2000],
        outcome_unknown=bool(getattr(error, "outcome_unknown", False)),
    ))
    values = {"last_payout_error": message[:2000]}
    if manual_review:
        values["requires_manual_review"] = True
    await _release_claim(session, commission.id, token, **values)
    await session.commit()

    if outcome == PayoutOutcome.PERMANENT_FAILURE:
        logger.warning("Commission %s: %s refused payout: %s", commission.id, rail, message)
    else:
        logger.info("Commission %s not paid (%s): %s", commission.id, outcome.value, message)
    return _fail(
        commission.id, _REASONS[outcome], message,
        rail=None if rail == "none" else rail, requires_manual_review=manual_review,
    )


async def _finalize(
    session: AsyncSession, commission: CommissionRow, token: str, rail: PayoutRail, result: TransferResult,
) -> DispatchResult:
    now = utcnow()
    paid = await session.execute(
        update(CommissionRow)
        .where(
            CommissionRow.id == commission.id,
            CommissionRow.status == APPROVED,
            CommissionRow.payout_claim_token == token,
        )
        .values(
            status=PAID, paid_at=now, payment_method=rail.name, proof_reference=result.transfer_id,
            requires_manual_review=False, last_payout_error=None,
            payout_claim_token=None, payout_claimed_at=None, updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    session.add(PayoutAttemptRow(
        commission_id=commission.id,
        rail=rail.name,
        outcome=PayoutOutcome.SUCCESS.value,
        idempotency_key=idempotency_key_for(commission.id),
        transfer_id=result.transfer_id,
        amount_minor=result.amount_minor,
        currency=result.currency,
    ))
    await session.commit()
    commission = await reload_commission(session, commission.id)

    if paid.rowcount != 1 and not (commission.status == PAID and commission.proof_reference == result.transfer_id):
        logger.error(
            "Commission %s: transfer %s succeeded on %s but the claim was lost (status %s)",
            commission.id, result.transfer_id, rail.name, commission.status,
        )
        raise InvariantViolation(
            "Transfer succeeded after the dispatch claim expired",
            commission_id=commission.id, transfer_id=result.transfer_id, rail=rail.name,
        )

    logger.info(
        "Commission %s paid via %s (%s)", commission.id, rail.name, result.transfer_id,
    )
    if paid.rowcount == 1:
        notify_paid(commission)
    return DispatchResult(
        success=True,
        commission_id=commission.id,
        transfer_id=result.transfer_id,
        amount=format_minor(commission.amount_minor, commission.currency),
        currency=commission.currency,
        rail=rail.name,
    )
