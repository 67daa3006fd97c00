"""
Database tables for click attribution, commissions, payout accounts and
payout attempts.
"""
from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, DateTime, Boolean, JSON,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import validates

from affiliate_engine.db.tables import Base, DecimalString
from affiliate_engine.errors import InvariantViolation


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class AffiliateClickRow(Base):
    """One attributed visit. Append-only; `converted` is the only mutable field."""
    __tablename__ = "affiliate_clicks"

    id = Column(String(36), primary_key=True, default=_uuid)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id"), nullable=False, index=True)
    link_id = Column(String(36), ForeignKey("affiliate_links.id"), nullable=True)
    target_ref = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 support
    user_agent = Column(String(500), nullable=True)
    referer = Column(String(1000), nullable=True)
    device_type = Column(String(10), nullable=True)
    converted = Column(Boolean, default=False, nullable=False)
    clicked_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("idx_click_affiliate_time", "affiliate_id", "clicked_at"),
    )


# Snapshot columns fixed at creation; correcting one means cancel + recreate.
_SNAPSHOT_FIELDS = (
    "affiliate_id", "order_id", "order_total_minor", "currency",
    "commission_type", "commission_value", "amount_minor",
)


class CommissionRow(Base):
    """Money owed to an affiliate for one order; the authoritative ledger row."""
    __tablename__ = "affiliate_commissions"

    id = Column(String(36), primary_key=True, default=_uuid)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id"), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)

    # Immutable snapshot
    order_total_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    commission_type = Column(String(10), nullable=False)
    commission_value = Column(DecimalString(), nullable=False)
    amount_minor = Column(BigInteger, nullable=False)

    # pending | approved | paid | cancelled
    status = Column(String(20), nullable=False, default="pending", index=True)

    payment_method = Column(String(30), nullable=True)
    proof_reference = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)
    risk_score = Column(Integer, nullable=False, default=0)

    requires_manual_review = Column(Boolean, nullable=False, default=False)
    last_payout_error = Column(Text, nullable=True)
    payout_attempt_count = Column(Integer, nullable=False, default=0)

    # In-flight dispatch claim (cross-process compare-and-set)
    payout_claim_token = Column(String(36), nullable=True)
    payout_claimed_at = Column(DateTime(timezone=True), nullable=True)

    approved_by = Column(String(100), nullable=True)
    cancel_reason = Column(String(200), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("affiliate_id", "order_id", name="uq_commission_affiliate_order"),
        Index("idx_commission_status_created", "status", "created_at"),
    )

    @validates(*_SNAPSHOT_FIELDS)
    def _write_once(self, key, value):
        current = self.__dict__.get(key)
        if current is not None and current != value:
            raise InvariantViolation(
                f"Commission snapshot field '{key}' is write-once",
                commission_id=self.id, field=key,
            )
        return value


class PayoutAccountRow(Base):
    """Per affiliate, per rail onboarding/readiness state."""
    __tablename__ = "payout_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id"), nullable=False, index=True)
    rail = Column(String(30), nullable=False)

    external_account_id = Column(String(255), nullable=True, index=True)
    access_token = Column(String(500), nullable=True)  # OAuth rails only
    details = Column(JSON, nullable=True)  # manual rail: pix key / bank account

    # not_started | pending | completed | failed
    onboarding_status = Column(String(20), nullable=False, default="not_started")
    connected = Column(Boolean, nullable=False, default=False)
    payouts_enabled = Column(Boolean, nullable=False, default=False)

    onboarded_at = Column(DateTime(timezone=True), nullable=True)  # first time ready
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("affiliate_id", "rail", name="uq_payout_account_rail"),
    )


class PayoutAttemptRow(Base):
    """One dispatch try against a rail. A success row bars further dispatch."""
    __tablename__ = "payout_attempts"

    id = Column(String(36), primary_key=True, default=_uuid)
    commission_id = Column(String(36), ForeignKey("affiliate_commissions.id"), nullable=False, index=True)
    rail = Column(String(30), nullable=False)
    # success | rail_not_ready | needs_onboarding | transient_failure | permanent_failure
    outcome = Column(String(30), nullable=False)
    idempotency_key = Column(String(100), nullable=False, index=True)
    transfer_id = Column(String(255), nullable=True)
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    error = Column(Text, nullable=True)
    outcome_unknown = Column(Boolean, nullable=False, default=False)  # timed out
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class OrderPaymentEventRow(Base):
    """Immutable log of order payment events consumed by reconciliation."""
    __tablename__ = "order_payment_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(255), nullable=True, unique=True)  # replay dedupe
    order_id = Column(String(36), nullable=False, index=True)
    payment_state = Column(String(20), nullable=False)
    source = Column(String(30), nullable=False, default="checkout")
    # commission_created | commission_cancelled | stale | noop | duplicate
    action = Column(String(30), nullable=True)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
