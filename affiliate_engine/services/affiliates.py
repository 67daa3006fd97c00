"""Affiliate registry: registration, lifecycle status, commission policy, vanity slugs, product links."""
from __future__ import annotations

import logging
import re
import secrets
import string
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.db.tables import AffiliateLinkRow, AffiliateRow, OrderRow
from affiliate_engine.errors import AffiliateNotActive, AffiliateNotFound, InvalidTransition, UserInputError
from affiliate_engine.models import AffiliateClass, AffiliateStatus, CommissionType, utcnow
from config.settings import settings

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_CODE_LENGTH = 10
_SLUG_RE = re.compile(r"^[a-z0-9-]{3,40}$")

DEFAULT_COMMISSION_VALUE = Decimal("10.00")

# Allowed lifecycle edges; same-status updates are no-ops
_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"active", "rejected"},
    "active": {"suspended", "inactive"},
    "suspended": {"active", "inactive"},
    "inactive": {"active"},
    "rejected": {"pending"},
}


def generate_code(length: int = _CODE_LENGTH) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def validate_commission_policy(commission_type: str, value) -> tuple[str, Decimal]:
    try:
        ctype = CommissionType(commission_type).value
    except ValueError:
        raise UserInputError(f"Unknown commission type '{commission_type}'")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise UserInputError(f"Invalid commission value '{value}'")
    if not amount.is_finite() or amount < 0:
        raise UserInputError("Commission value must be a non-negative number")
    if ctype == CommissionType.PERCENT.value and amount > 100:
        raise UserInputError("Percent commission must be between 0 and 100")
    return ctype, amount


async def get_affiliate(session: AsyncSession, affiliate_id: str) -> AffiliateRow:
    affiliate = await session.get(AffiliateRow, affiliate_id, populate_existing=True)
    if affiliate is None:
        raise AffiliateNotFound(f"Affiliate {affiliate_id} not found", affiliate_id=affiliate_id)
    return affiliate


async def find_by_code_or_slug(session: AsyncSession, code: str) -> Optional[AffiliateRow]:
    """Codes match exactly (uppercased), slugs case-insensitively."""
    code = (code or "").strip()
    if not code:
        return None
    result = await session.execute(
        select(AffiliateRow).where(or_(
            AffiliateRow.code == code.upper(),
            AffiliateRow.custom_slug == code.lower(),
        ))
    )
    return result.scalars().first()


async def _slug_taken(session: AsyncSession, slug: str, exclude_id: Optional[str] = None) -> bool:
    query = select(func.count()).select_from(AffiliateRow).where(or_(
        AffiliateRow.custom_slug == slug,
        func.upper(AffiliateRow.code) == slug.upper(),
    ))
    if exclude_id:
        query = query.where(AffiliateRow.id != exclude_id)
    return (await session.execute(query)).scalar_one() > 0


def _normalize_slug(slug: str) -> str:
    slug = (slug or "").strip().lower()
    if not _SLUG_RE.match(slug):
        raise UserInputError("Slug must be 3-40 characters of lowercase letters, digits and hyphens")
    return slug


async def register_affiliate(
    session: AsyncSession,
    name: str,
    email: str,
    affiliate_class: str = AffiliateClass.STANDARD.value,
    commission_type: str = CommissionType.PERCENT.value,
    commission_value=DEFAULT_COMMISSION_VALUE,
    custom_slug: Optional[str] = None,
) -> AffiliateRow:
    """Create a pending affiliate with a fresh unique code."""
    try:
        aclass = AffiliateClass(affiliate_class).value
    except ValueError:
        raise UserInputError(f"Unknown affiliate class '{affiliate_class}'")
    ctype, value = validate_commission_policy(commission_type, commission_value)

    slug = None
    if custom_slug:
        slug = _normalize_slug(custom_slug)
        if await _slug_taken(session, slug):
            raise UserInputError(f"Slug '{slug}' is already in use")

    for _ in range(5):
        code = generate_code()
        affiliate = AffiliateRow(
            code=code,
            custom_slug=slug,
            name=name.strip(),
            email=email.strip().lower(),
            affiliate_class=aclass,
            status=AffiliateStatus.PENDING.value,
            commission_type=ctype,
            commission_value=value,
        )
        session.add(affiliate)
        try:
            await session.commit()
        except IntegrityError:
            # code collision (or a slug claimed concurrently)
            await session.rollback()
            if slug and await _slug_taken(session, slug):
                raise UserInputError(f"Slug '{slug}' is already in use")
            continue
        logger.info("Registered affiliate %s (%s)", affiliate.id, code)
        return affiliate
    raise UserInputError("Could not allocate a unique affiliate code, try again")


async def set_status(session: AsyncSession, affiliate_id: str, new_status: str) -> AffiliateRow:
    try:
        target = AffiliateStatus(new_status).value
    except ValueError:
        raise UserInputError(f"Unknown affiliate status '{new_status}'")

    affiliate = await get_affiliate(session, affiliate_id)
    if affiliate.status == target:
        return affiliate
    if target not in _TRANSITIONS.get(affiliate.status, set()):
        raise InvalidTransition(
            f"Cannot move affiliate from {affiliate.status} to {target}",
            affiliate_id=affiliate_id,
        )

    previous = affiliate.status
    affiliate.status = target
    affiliate.status_changed_at = utcnow()
    await session.commit()
    logger.info("Affiliate %s status %s -> %s", affiliate_id, previous, target)
    return affiliate


async def update_commission_policy(
    session: AsyncSession, affiliate_id: str, commission_type: str, value,
) -> AffiliateRow:
    """Applies to future commissions only; existing rows keep their snapshot."""
    ctype, amount = validate_commission_policy(commission_type, value)
    affiliate = await get_affiliate(session, affiliate_id)
    affiliate.commission_type = ctype
    affiliate.commission_value = amount
    await session.commit()
    logger.info("Affiliate %s policy now %s %s", affiliate_id, ctype, amount)
    return affiliate


async def set_custom_slug(session: AsyncSession, affiliate_id: str, slug: str) -> AffiliateRow:
    slug = _normalize_slug(slug)
    affiliate = await get_affiliate(session, affiliate_id)
    if affiliate.custom_slug == slug:
        return affiliate
    if await _slug_taken(session, slug, exclude_id=affiliate_id):
        raise UserInputError(f"Slug '{slug}' is already in use")
    affiliate.custom_slug = slug
    await session.commit()
    return affiliate


# ── Product links ────────────────────────────────────────────────────────────

async def create_link(
    session: AsyncSession, affiliate_id: str, product_id: str,
) -> tuple[AffiliateLinkRow, bool]:
    """One link per (affiliate, product). Returns (link, created); an existing link is returned as is."""
    product_id = (product_id or "").strip()
    if not product_id or len(product_id) > 100:
        raise UserInputError("product_id must be 1-100 characters")

    affiliate = await get_affiliate(session, affiliate_id)
    if affiliate.status != AffiliateStatus.ACTIVE.value:
        raise AffiliateNotActive(f"Affiliate {affiliate_id} is not active", affiliate_id=affiliate_id)

    existing = await _find_link(session, affiliate_id, product_id)
    if existing is not None:
        return existing, False

    link = AffiliateLinkRow(affiliate_id=affiliate_id, product_id=product_id)
    session.add(link)
    try:
        await session.commit()
    except IntegrityError:
        # created concurrently
        await session.rollback()
        return await _find_link(session, affiliate_id, product_id), False
    logger.info("Affiliate %s created link %s for product %s", affiliate_id, link.id, product_id)
    return link, True


async def _find_link(session: AsyncSession, affiliate_id: str, product_id: str) -> Optional[AffiliateLinkRow]:
    result = await session.execute(
        select(AffiliateLinkRow)
        .where(AffiliateLinkRow.affiliate_id == affiliate_id, AffiliateLinkRow.product_id == product_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_links(session: AsyncSession, affiliate_id: str) -> list[tuple[AffiliateLinkRow, int]]:
    """Links with the number of orders attributed through each."""
    conversions = (
        select(OrderRow.affiliate_link_id, func.count(OrderRow.id).label("orders"))
        .where(OrderRow.affiliate_link_id.is_not(None))
        .group_by(OrderRow.affiliate_link_id)
        .subquery()
    )
    result = await session.execute(
        select(AffiliateLinkRow, func.coalesce(conversions.c.orders, 0))
        .outerjoin(conversions, conversions.c.affiliate_link_id == AffiliateLinkRow.id)
        .where(AffiliateLinkRow.affiliate_id == affiliate_id)
        .order_by(AffiliateLinkRow.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return [(link, int(orders)) for link, orders in result.all()]


def link_to_dict(link: AffiliateLinkRow, affiliate: AffiliateRow, conversions: int = 0) -> dict:
    ref = affiliate.custom_slug or affiliate.code
    return {
        "id": link.id,
        "product_id": link.product_id,
        "url": f"{settings.APP_BASE_URL.rstrip('/')}/products/{link.product_id}?ref={ref}",
        "clicks": link.clicks,
        "conversions": conversions,
        "created_at": link.created_at.isoformat() if link.created_at else None,
    }


def affiliate_to_dict(affiliate: AffiliateRow) -> dict:
    return {
        "id": affiliate.id,
        "code": affiliate.code,
        "custom_slug": affiliate.custom_slug,
        "name": affiliate.name,
        "email": affiliate.email,
        "affiliate_class": affiliate.affiliate_class,
        "status": affiliate.status,
        "commission_type": affiliate.commission_type,
        "commission_value": str(affiliate.commission_value),
        "preferred_rail": affiliate.preferred_rail,
        "payment_automation_enabled": affiliate.payment_automation_enabled,
        "created_at": affiliate.created_at.isoformat() if affiliate.created_at else None,
    }
