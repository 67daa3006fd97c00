"""Identity for the affiliate and operator surfaces.

Affiliates authenticate with an HS256 bearer token whose subject is the
affiliate id; the storefront's own login issues it. Operators use the
`X-Admin-Key` header.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.db.engine import get_session
from affiliate_engine.db.tables import AffiliateRow
from config.settings import settings

# ---- JWT (minimal, no PyJWT dependency) ----

_JWT_ALGO = "HS256"
_ACCESS_TTL = 3600 * 24 * 7  # 7 days


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s)


def _sign(payload: dict) -> str:
    header = _b64url(json.dumps({"alg": _JWT_ALGO, "typ": "JWT"}).encode())
    body = _b64url(json.dumps(payload).encode())
    sig_input = f"{header}.{body}".encode()
    sig = hmac.new(settings.JWT_SECRET.encode(), sig_input, hashlib.sha256).digest()
    return f"{header}.{body}.{_b64url(sig)}"


def _verify(token: str) -> Optional[dict]:
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None
        sig_input = f"{parts[0]}.{parts[1]}".encode()
        expected = hmac.new(settings.JWT_SECRET.encode(), sig_input, hashlib.sha256).digest()
        actual = _b64url_decode(parts[2])
        if not hmac.compare_digest(expected, actual):
            return None
        payload = json.loads(_b64url_decode(parts[1]))
        if payload.get("exp", 0) < time.time():
            return None
        return payload
    except (ValueError, TypeError):
        return None


def create_access_token(affiliate_id: str, ttl: int = _ACCESS_TTL) -> str:
    now = int(time.time())
    return _sign({
        "sub": affiliate_id, "iat": now, "exp": now + ttl,
        "type": "access", "jti": uuid.uuid4().hex[:8],
    })


# ---- FastAPI dependencies ----

_bearer = HTTPBearer(auto_error=False)


async def get_current_affiliate(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    session: AsyncSession = Depends(get_session),
) -> Optional[AffiliateRow]:
    if not creds:
        return None
    payload = _verify(creds.credentials)
    if not payload or payload.get("type") != "access":
        return None
    result = await session.execute(select(AffiliateRow).where(AffiliateRow.id == payload["sub"]))
    return result.scalar_one_or_none()


async def require_affiliate(
    affiliate: Optional[AffiliateRow] = Depends(get_current_affiliate),
) -> AffiliateRow:
    if not affiliate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return affiliate


def require_admin(x_admin_key: Optional[str] = Header(None)) -> str:
    """Timing-safe operator key check. Returns an actor label for audit fields."""
    expected = settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(503, "Admin endpoints disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(403, "Invalid admin key")
    return "admin"
