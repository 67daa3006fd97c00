"""SQLAlchemy ORM models: affiliates, links, tenant settings, and the
checkout-owned orders table the engine reads from."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, ForeignKey, Index,
    UniqueConstraint, TypeDecorator,
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class DecimalString(TypeDecorator):
    """Exact decimal stored as text (rates, fixed commission values).

    SQLite has no native decimal type; text keeps "12.50" exact on both
    backends.
    """
    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class SiteSettingsRow(Base):
    """Tenant-level storefront settings (only the affiliate bits live here)."""
    __tablename__ = "site_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    affiliate_cookie_days = Column(Integer, nullable=False, default=30)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AffiliateRow(Base):
    """A referrer. Never hard-deleted once it has commission history."""
    __tablename__ = "affiliates"

    id = Column(String(36), primary_key=True, default=_uuid)
    code = Column(String(32), nullable=False, unique=True, index=True)
    custom_slug = Column(String(40), nullable=True, unique=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=False, index=True)

    # standard | licensed
    affiliate_class = Column(String(20), nullable=False, default="standard")
    # pending | active | suspended | rejected | inactive
    status = Column(String(20), nullable=False, default="pending", index=True)

    # percent | fixed
    commission_type = Column(String(10), nullable=False, default="percent")
    commission_value = Column(DecimalString(), nullable=False, default=Decimal("0"))

    # Rail used for automatic dispatch; automated rails need an external account id
    preferred_rail = Column(String(30), nullable=True)
    payment_automation_enabled = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    status_changed_at = Column(DateTime(timezone=True), nullable=True)


class AffiliateLinkRow(Base):
    """Per-product referral link; carries its own click counter."""
    __tablename__ = "affiliate_links"

    id = Column(String(36), primary_key=True, default=_uuid)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id"), nullable=False, index=True)
    product_id = Column(String(100), nullable=False)
    clicks = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("affiliate_id", "product_id", name="uq_affiliate_link_product"),
    )


class OrderRow(Base):
    """Storefront order, owned by the checkout module.

    The engine reads total/currency/payment_state and writes nothing except
    the affiliate linkage stamped at creation time.
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    total_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="BRL")
    payment_state = Column(String(20), nullable=False, default="pending", index=True)
    customer_email = Column(String(320), nullable=True)
    customer_ip = Column(String(45), nullable=True)

    affiliate_id = Column(String(36), ForeignKey("affiliates.id"), nullable=True, index=True)
    affiliate_link_id = Column(String(36), ForeignKey("affiliate_links.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_orders_affiliate_created", "affiliate_id", "created_at"),
    )
