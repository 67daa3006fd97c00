"""Buyer-facing attribution endpoints: click tracking and the current attribution."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.db.engine import get_session
from affiliate_engine.services.attribution import (
    StarletteCookieJar,
    get_cookie_window_days,
    metadata_from_request,
    record_click,
    resolve_attribution_for_checkout,
    track_click_safely,
)

router = APIRouter(prefix="/api/v1/attribution", tags=["Attribution"])
logger = logging.getLogger(__name__)


class TrackRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    target_ref: Optional[str] = Field(None, max_length=100)


@router.post("/track")
async def track(
    body: TrackRequest,
    request: Request,
    response: Response,
    fail_open: bool = Query(False, description="Swallow attribution errors (page-embedded tracking)"),
    session: AsyncSession = Depends(get_session),
):
    """Record a referral click and pin the visitor to the affiliate via cookies."""
    jar = StarletteCookieJar(request, response)
    metadata = metadata_from_request(request)
    if fail_open:
        click = await track_click_safely(session, body.code, body.target_ref, metadata, jar)
        return {"click_id": click.id if click else None}
    click = await record_click(session, body.code, body.target_ref, metadata, jar)
    return {"click_id": click.id}


@router.get("/current")
async def current_attribution(request: Request, session: AsyncSession = Depends(get_session)):
    """What checkout would attribute this visitor to right now."""
    window = await get_cookie_window_days(session)
    ref = resolve_attribution_for_checkout(StarletteCookieJar(request), window_days=window)
    if ref is None:
        return {"attribution": None}
    return {
        "attribution": {
            "code": ref.code,
            "click_id": ref.click_id,
            "issued_at": ref.issued_at.isoformat(),
        },
        "window_days": window,
    }
