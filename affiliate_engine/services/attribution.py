"""
Attribution store and click ledger.

A visitor who lands with a referral code gets two signed cookies:

  affiliate_code      the affiliate's public code (never the internal id)
  affiliate_click_id  the click row, for conversion bookkeeping

A later visit with another code overwrites both (last-touch attribution).
Checkout reads them back through `resolve_attribution_for_checkout`, which is
a pure read, and stamps the order via `attach_order_to_affiliate`.

Cookie access goes through the `CookieJar` protocol so the logic runs the same
against a Starlette request/response pair and an in-memory jar in tests.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional, Protocol

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request
from starlette.responses import Response

from affiliate_engine.db.affiliate_tables import AffiliateClickRow
from affiliate_engine.db.tables import AffiliateLinkRow, AffiliateRow, OrderRow, SiteSettingsRow
from affiliate_engine.errors import AffiliateNotActive, EngineError, OrderNotFound, UnknownCode
from affiliate_engine.models import AffiliateRef, AffiliateStatus, RequestMetadata, utcnow
from affiliate_engine.services.affiliates import find_by_code_or_slug
from config.settings import settings

logger = logging.getLogger(__name__)

CODE_COOKIE = "affiliate_code"
CLICK_COOKIE = "affiliate_click_id"
_SIG_LEN = 32


# ── Cookie jar capability ────────────────────────────────────────────────────

class CookieJar(Protocol):
    def get(self, name: str) -> Optional[str]: ...

    def set(self, name: str, value: str, max_age: int) -> None: ...

    def delete(self, name: str) -> None: ...


class InMemoryCookieJar:
    """Browser stand-in: honors max_age against an injectable clock."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._cookies: dict[str, tuple[str, float]] = {}

    def get(self, name: str) -> Optional[str]:
        entry = self._cookies.get(name)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._cookies[name]
            return None
        return value

    def set(self, name: str, value: str, max_age: int) -> None:
        self._cookies[name] = (value, self._clock() + max_age)

    def delete(self, name: str) -> None:
        self._cookies.pop(name, None)


class StarletteCookieJar:
    """Reads from the incoming request, writes Set-Cookie on the response."""

    def __init__(self, request: Request, response: Optional[Response] = None):
        self._request = request
        self._response = response
        self._written: dict[str, Optional[str]] = {}

    def get(self, name: str) -> Optional[str]:
        if name in self._written:
            return self._written[name]
        return self._request.cookies.get(name)

    def set(self, name: str, value: str, max_age: int) -> None:
        self._written[name] = value
        if self._response is not None:
            self._response.set_cookie(
                name, value,
                max_age=max_age,
                path="/",
                httponly=True,
                samesite="lax",
                secure=settings.APP_BASE_URL.startswith("https://"),
            )

    def delete(self, name: str) -> None:
        self._written[name] = None
        if self._response is not None:
            self._response.delete_cookie(name, path="/")


# ── Signed cookie values ─────────────────────────────────────────────────────

def _signature(payload: str, issued: int) -> str:
    msg = f"{payload}.{issued}".encode()
    return hmac.new(settings.AFFILIATE_SIGNING_KEY.encode(), msg, hashlib.sha256).hexdigest()[:_SIG_LEN]


def sign_value(payload: str, issued_at: Optional[datetime] = None) -> str:
    issued = int((issued_at or utcnow()).timestamp())
    return f"{payload}.{issued}.{_signature(payload, issued)}"


def verify_value(raw: Optional[str]) -> Optional[tuple[str, datetime]]:
    """Returns (payload, issued_at) or None when missing or tampered."""
    if not raw:
        return None
    parts = raw.rsplit(".", 2)
    if len(parts) != 3:
        return None
    payload, issued_raw, sig = parts
    if not payload or not issued_raw.isdigit():
        return None
    if not hmac.compare_digest(_signature(payload, int(issued_raw)), sig):
        return None
    return payload, datetime.fromtimestamp(int(issued_raw), tz=timezone.utc)


# ── Request metadata ─────────────────────────────────────────────────────────

def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer or "unknown"


def metadata_from_request(request: Request) -> RequestMetadata:
    peer = request.client.host if request.client else None
    return RequestMetadata(
        ip_address=client_ip(request.headers, peer)[:45],
        user_agent=(request.headers.get("user-agent") or "")[:500],
        referer=(request.headers.get("referer") or "")[:1000],
    )


# ── Window ───────────────────────────────────────────────────────────────────

async def get_cookie_window_days(session: AsyncSession) -> int:
    """Tenant setting when present, else AFFILIATE_COOKIE_DAYS."""
    result = await session.execute(select(SiteSettingsRow.affiliate_cookie_days).limit(1))
    days = result.scalar_one_or_none()
    if days and days > 0:
        return int(days)
    return settings.AFFILIATE_COOKIE_DAYS


# ── Click recording ──────────────────────────────────────────────────────────

async def record_click(
    session: AsyncSession,
    code: str,
    target_ref: Optional[str],
    metadata: RequestMetadata,
    jar: CookieJar,
    now: Optional[datetime] = None,
) -> AffiliateClickRow:
    """Log a click and pin the visitor to this affiliate (last touch wins)."""
    now = now or utcnow()
    affiliate = await find_by_code_or_slug(session, code)
    if affiliate is None:
        raise UnknownCode(f"Unknown affiliate code '{code}'", code=code)
    if affiliate.status != AffiliateStatus.ACTIVE.value:
        raise AffiliateNotActive(f"Affiliate '{code}' is not active", affiliate_id=affiliate.id)

    link_id = None
    if target_ref:
        result = await session.execute(
            select(AffiliateLinkRow.id).where(
                AffiliateLinkRow.affiliate_id == affiliate.id,
                AffiliateLinkRow.product_id == target_ref,
            )
        )
        link_id = result.scalar_one_or_none()
        if link_id:
            await session.execute(
                update(AffiliateLinkRow)
                .where(AffiliateLinkRow.id == link_id)
                .values(clicks=AffiliateLinkRow.clicks + 1)
            )

    click = AffiliateClickRow(
        affiliate_id=affiliate.id,
        link_id=link_id,
        target_ref=target_ref[:100] if target_ref else None,
        ip_address=metadata.ip_address,
        user_agent=metadata.user_agent,
        referer=metadata.referer,
        device_type=metadata.device_type,
        clicked_at=now,
    )
    session.add(click)
    window_days = await get_cookie_window_days(session)
    await session.commit()

    max_age = window_days * 86400
    jar.set(CODE_COOKIE, sign_value(affiliate.code, now), max_age)
    jar.set(CLICK_COOKIE, sign_value(click.id, now), max_age)
    logger.info("Click %s recorded for affiliate %s", click.id, affiliate.id)
    return click


async def track_click_safely(
    session: AsyncSession,
    code: str,
    target_ref: Optional[str],
    metadata: RequestMetadata,
    jar: CookieJar,
    now: Optional[datetime] = None,
) -> Optional[AffiliateClickRow]:
    """Buyer-facing wrapper: attribution problems degrade to "no affiliate"."""
    try:
        return await record_click(session, code, target_ref, metadata, jar, now=now)
    except EngineError as e:
        logger.info("Attribution skipped for code %r: %s", code, e.code)
    except Exception:
        logger.exception("Attribution failed for code %r", code)
    await session.rollback()
    return None


def resolve_attribution_for_checkout(
    jar: CookieJar,
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[AffiliateRef]:
    """Read-only: which affiliate, if any, this visitor is pinned to."""
    now = now or utcnow()
    window = timedelta(days=window_days or settings.AFFILIATE_COOKIE_DAYS)

    code_cookie = verify_value(jar.get(CODE_COOKIE))
    if code_cookie is None:
        return None
    code, issued_at = code_cookie
    if now - issued_at > window:
        return None

    click_id = None
    click_cookie = verify_value(jar.get(CLICK_COOKIE))
    if click_cookie is not None and now - click_cookie[1] <= window:
        click_id = click_cookie[0]
    return AffiliateRef(code=code, click_id=click_id, issued_at=issued_at)


async def attach_order_to_affiliate(
    session: AsyncSession,
    order_id: str,
    attribution: Optional[AffiliateRef],
) -> Optional[str]:
    """Stamp the order with the attributed affiliate once. Returns the affiliate id."""
    order = await session.get(OrderRow, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
    if order.affiliate_id:
        return order.affiliate_id
    if attribution is None:
        return None

    affiliate = await find_by_code_or_slug(session, attribution.code)
    click = None
    if attribution.click_id:
        click = await session.get(AffiliateClickRow, attribution.click_id)
        if click is not None and affiliate is not None and click.affiliate_id != affiliate.id:
            click = None
        if click is not None and affiliate is None:
            affiliate = await session.get(AffiliateRow, click.affiliate_id)

    if affiliate is None or affiliate.status != AffiliateStatus.ACTIVE.value:
        return None

    result = await session.execute(
        update(OrderRow)
        .where(OrderRow.id == order_id, OrderRow.affiliate_id.is_(None))
        .values(affiliate_id=affiliate.id, affiliate_link_id=click.link_id if click else None)
    )
    if result.rowcount != 1:
        await session.rollback()
        await session.refresh(order)
        return order.affiliate_id

    if click is not None:
        await session.execute(
            update(AffiliateClickRow)
            .where(AffiliateClickRow.id == click.id)
            .values(converted=True)
        )
    await session.commit()
    logger.info("Order %s attributed to affiliate %s", order_id, affiliate.id)
    return affiliate.id


async def get_click_stats(
    session: AsyncSession,
    affiliate_id: str,
    days: int = 30,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    since = now - timedelta(days=days)
    result = await session.execute(
        select(
            AffiliateClickRow.device_type,
            func.count(AffiliateClickRow.id),
            func.sum(case((AffiliateClickRow.converted.is_(True), 1), else_=0)),
        )
        .where(AffiliateClickRow.affiliate_id == affiliate_id, AffiliateClickRow.clicked_at >= since)
        .group_by(AffiliateClickRow.device_type)
    )
    by_device: dict[str, int] = {}
    total = conversions = 0
    for device, count, converted in result.all():
        by_device[device or "unknown"] = count
        total += count
        conversions += int(converted or 0)
    return {
        "period_days": days,
        "total_clicks": total,
        "conversions": conversions,
        "conversion_rate": round(conversions / total * 100, 2) if total else 0.0,
        "by_device": by_device,
    }
