"""
Operator endpoints for the commission ledger and payouts.

All routes require X-Admin-Key. Dispatch outcomes map onto HTTP so the
operator UI can tell "retry later" (503) from "fix onboarding" / "pay by
hand" (409) from "rail refused" (502).
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.auth import require_admin
from affiliate_engine.db.engine import get_session
from affiliate_engine.models import DispatchReason, RailName
from affiliate_engine.services import affiliates as registry
from affiliate_engine.services import commissions as ledger
from affiliate_engine.services.payouts import DispatchResult, dispatch, dispatch_approved_batch

router = APIRouter(prefix="/api/v1/admin", tags=["Commission Admin"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)

_REASON_STATUS = {
    DispatchReason.NOT_APPROVED.value: 409,
    DispatchReason.ALREADY_PAID.value: 409,
    DispatchReason.RAIL_NOT_READY.value: 409,
    DispatchReason.NEEDS_ONBOARDING.value: 409,
    DispatchReason.TRANSIENT_FAILURE.value: 503,
    DispatchReason.PERMANENT_FAILURE.value: 502,
}


class CancelRequest(BaseModel):
    reason: str = Field("cancelled by operator", max_length=200)


class MarkPaidRequest(BaseModel):
    proof_reference: str = Field(..., min_length=1, max_length=500)
    payment_method: str = RailName.MANUAL.value
    notes: Optional[str] = None


class StatusRequest(BaseModel):
    status: str


class CommissionPolicyRequest(BaseModel):
    commission_type: str
    commission_value: str


def _dispatch_response(result: DispatchResult) -> JSONResponse:
    if result.success:
        return JSONResponse(status_code=200, content={"payout": result.to_dict()})
    return JSONResponse(
        status_code=_REASON_STATUS.get(result.reason, 409),
        content={"error": result.reason, "message": result.message, "payout": result.to_dict()},
    )


# ── Commissions ──────────────────────────────────────────────────────────────

@router.get("/commissions")
async def list_commissions(
    status: Optional[str] = None,
    affiliate_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    rows, stats = await ledger.list_commissions(
        session, status=status, affiliate_id=affiliate_id,
        start=start_date, end=end_date, limit=limit, offset=offset,
    )
    return {"commissions": [ledger.commission_to_dict(c) for c in rows], "stats": stats}


@router.get("/commissions/{commission_id}")
async def get_commission(commission_id: str, session: AsyncSession = Depends(get_session)):
    commission, attempts = await ledger.get_commission_with_attempts(session, commission_id)
    return {
        "commission": ledger.commission_to_dict(commission),
        "attempts": [ledger.attempt_to_dict(a) for a in attempts],
    }


@router.post("/commissions/{commission_id}/approve")
async def approve(
    commission_id: str,
    auto_dispatch: bool = Query(True),
    actor: str = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    """Approve, then try an automatic payout when the affiliate has automation on."""
    commission = await ledger.approve_commission(session, commission_id, approved_by=actor)
    payout = None
    if auto_dispatch and commission.status == ledger.APPROVED:
        affiliate = await registry.get_affiliate(session, commission.affiliate_id)
        if affiliate.payment_automation_enabled:
            result = await dispatch(session, commission_id)
            payout = result.to_dict()
            commission = await ledger.reload_commission(session, commission_id)
    return {"commission": ledger.commission_to_dict(commission), "payout": payout}


@router.post("/commissions/{commission_id}/retry-payout")
async def retry_payout(commission_id: str, session: AsyncSession = Depends(get_session)):
    return _dispatch_response(await dispatch(session, commission_id))


@router.post("/commissions/{commission_id}/cancel")
async def cancel(
    commission_id: str,
    req: Optional[CancelRequest] = None,
    session: AsyncSession = Depends(get_session),
):
    reason = req.reason if req else "cancelled by operator"
    commission = await ledger.cancel_commission(session, commission_id, reason=reason)
    return {"commission": ledger.commission_to_dict(commission)}


@router.post("/commissions/{commission_id}/mark-paid")
async def mark_paid(commission_id: str, req: MarkPaidRequest, session: AsyncSession = Depends(get_session)):
    """Record an out-of-band settlement (bank transfer, PIX) with its proof."""
    commission = await ledger.mark_paid(
        session, commission_id, req.proof_reference,
        payment_method=req.payment_method, notes=req.notes,
    )
    return {"commission": ledger.commission_to_dict(commission)}


@router.post("/payouts/run")
async def run_payouts(limit: int = Query(50, ge=1, le=500), session: AsyncSession = Depends(get_session)):
    return await dispatch_approved_batch(session, limit=limit)


# ── Affiliates ───────────────────────────────────────────────────────────────

@router.post("/affiliates/{affiliate_id}/status")
async def set_affiliate_status(
    affiliate_id: str, req: StatusRequest, session: AsyncSession = Depends(get_session),
):
    affiliate = await registry.set_status(session, affiliate_id, req.status)
    return {"affiliate": registry.affiliate_to_dict(affiliate)}


@router.post("/affiliates/{affiliate_id}/commission-policy")
async def set_commission_policy(
    affiliate_id: str, req: CommissionPolicyRequest, session: AsyncSession = Depends(get_session),
):
    affiliate = await registry.update_commission_policy(
        session, affiliate_id, req.commission_type, req.commission_value,
    )
    return {"affiliate": registry.affiliate_to_dict(affiliate)}
