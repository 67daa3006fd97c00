"""Domain enums and value objects shared across the affiliate engine."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional


class AffiliateClass(str, Enum):
    STANDARD = "standard"    # earns percent/fixed commission
    LICENSED = "licensed"    # commercial license holder, no commission


class AffiliateStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REJECTED = "rejected"
    INACTIVE = "inactive"


class CommissionType(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    CANCELLED = "cancelled"


TERMINAL_COMMISSION_STATUSES = {CommissionStatus.PAID.value, CommissionStatus.CANCELLED.value}


class PaymentState(str, Enum):
    """Order payment states as reported by checkout."""
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    CHARGED_BACK = "charged_back"
    FAILED = "failed"
    CANCELLED = "cancelled"


CAPTURED_STATES = {PaymentState.PAID.value}
REVERSED_STATES = {PaymentState.REFUNDED.value, PaymentState.CHARGED_BACK.value}


class RailName(str, Enum):
    STRIPE_CONNECT = "stripe_connect"        # destination-charge transfers
    MERCADOPAGO_SPLIT = "mercadopago_split"  # marketplace split payments
    MANUAL = "manual"                        # operator bank/PIX transfer


class PayoutOutcome(str, Enum):
    SUCCESS = "success"
    RAIL_NOT_READY = "rail_not_ready"
    NEEDS_ONBOARDING = "needs_onboarding"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class DispatchReason(str, Enum):
    """Why a dispatch call did not move money."""
    RAIL_NOT_READY = "RailNotReady"
    NEEDS_ONBOARDING = "NeedsOnboarding"
    TRANSIENT_FAILURE = "TransientFailure"
    PERMANENT_FAILURE = "PermanentFailure"
    NOT_APPROVED = "NotApproved"
    ALREADY_PAID = "AlreadyPaid"


# ── Money ────────────────────────────────────────────────────────────────────

# ISO 4217 minor-unit exponents that differ from the usual 2
_ZERO_DECIMAL = {"JPY", "KRW", "CLP", "VND", "ISK", "UGX", "PYG", "XAF", "XOF"}
_THREE_DECIMAL = {"BHD", "KWD", "OMR", "JOD", "TND", "IQD", "LYD"}


def minor_unit_exponent(currency: str) -> int:
    code = (currency or "").upper()
    if code in _ZERO_DECIMAL:
        return 0
    if code in _THREE_DECIMAL:
        return 3
    return 2


def to_minor(amount: Decimal | str | int, currency: str) -> int:
    """Major-unit amount → integer minor units, rounded half-up."""
    exp = minor_unit_exponent(currency)
    quantized = Decimal(str(amount)).scaleb(exp).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(quantized)


def from_minor(amount_minor: int, currency: str) -> Decimal:
    exp = minor_unit_exponent(currency)
    return Decimal(amount_minor).scaleb(-exp).quantize(Decimal(1).scaleb(-exp))


def format_minor(amount_minor: int, currency: str) -> str:
    """Render minor units as a plain decimal string, e.g. 2000 BRL → "20.00"."""
    return str(from_minor(amount_minor, currency))


# ── Value objects ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AffiliateRef:
    """What checkout learns from the attribution cookies."""
    code: str
    click_id: Optional[str]
    issued_at: datetime


@dataclass(frozen=True)
class RequestMetadata:
    """Visitor fingerprint captured with a click."""
    ip_address: str = "unknown"
    user_agent: str = ""
    referer: str = ""

    @property
    def device_type(self) -> str:
        return detect_device_type(self.user_agent)


def detect_device_type(user_agent: str) -> str:
    ua = (user_agent or "").lower()
    if any(k in ua for k in ("mobile", "android", "iphone", "ipad", "phone", "tablet")):
        if "ipad" in ua or "tablet" in ua:
            return "tablet"
        return "mobile"
    return "desktop"


# ── Time ─────────────────────────────────────────────────────────────────────

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
