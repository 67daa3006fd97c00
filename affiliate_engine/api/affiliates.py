"""Affiliate self-service: registration, profile, product links, own commissions and clicks."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.auth import create_access_token, require_affiliate
from affiliate_engine.db.engine import get_session
from affiliate_engine.db.tables import AffiliateRow
from affiliate_engine.services import affiliates as registry
from affiliate_engine.services.attribution import get_click_stats
from affiliate_engine.services.commissions import commission_to_dict, list_commissions
from affiliate_engine.services.payout_accounts import list_accounts, viable_payment_methods

router = APIRouter(prefix="/api/v1", tags=["Affiliates"])
logger = logging.getLogger(__name__)


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    affiliate_class: str = "standard"
    custom_slug: Optional[str] = None


class SlugRequest(BaseModel):
    slug: str


class LinkRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=100)


@router.post("/affiliates/register", status_code=201)
async def register(req: RegisterRequest, session: AsyncSession = Depends(get_session)):
    """Apply to the program. New affiliates start pending until an operator activates them."""
    affiliate = await registry.register_affiliate(
        session, req.name, req.email,
        affiliate_class=req.affiliate_class,
        custom_slug=req.custom_slug,
    )
    return {
        "affiliate": registry.affiliate_to_dict(affiliate),
        "access_token": create_access_token(affiliate.id),
        "token_type": "bearer",
    }


@router.get("/affiliate/payment-methods")
async def payment_methods(code: Optional[str] = None, session: AsyncSession = Depends(get_session)):
    """Which buyer payment options still route the commission to this affiliate."""
    return await viable_payment_methods(session, code)


@router.get("/affiliate/me")
async def me(
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    return {
        "affiliate": registry.affiliate_to_dict(affiliate),
        "payout_accounts": await list_accounts(session, affiliate.id),
    }


@router.post("/affiliate/me/slug")
async def set_slug(
    req: SlugRequest,
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    updated = await registry.set_custom_slug(session, affiliate.id, req.slug)
    return {"affiliate": registry.affiliate_to_dict(updated)}


@router.get("/affiliate/me/links")
async def my_links(
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    links = await registry.list_links(session, affiliate.id)
    return {"links": [registry.link_to_dict(link, affiliate, orders) for link, orders in links]}


@router.post("/affiliate/me/links")
async def create_link(
    req: LinkRequest,
    response: Response,
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    """Per-product referral link; asking again for the same product returns the existing one."""
    affiliate_id = affiliate.id
    link, created = await registry.create_link(session, affiliate_id, req.product_id)
    response.status_code = 201 if created else 200
    affiliate = await registry.get_affiliate(session, affiliate_id)
    return {"link": registry.link_to_dict(link, affiliate), "created": created}


@router.get("/affiliate/me/commissions")
async def my_commissions(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    rows, stats = await list_commissions(
        session, status=status, affiliate_id=affiliate.id, limit=limit, offset=offset,
    )
    return {"commissions": [commission_to_dict(c) for c in rows], "stats": stats}


@router.get("/affiliate/me/clicks")
async def my_clicks(
    days: int = Query(30, ge=1, le=365),
    affiliate: AffiliateRow = Depends(require_affiliate),
    session: AsyncSession = Depends(get_session),
):
    return await get_click_stats(session, affiliate.id, days=days)
