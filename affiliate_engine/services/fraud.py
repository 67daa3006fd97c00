"""Fraud screening for new commissions.

Screening annotates, it never blocks: a suspicious commission is still
created, with its reasons in `notes` and `requires_manual_review` set.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.db.affiliate_tables import AffiliateClickRow
from affiliate_engine.db.tables import AffiliateRow, OrderRow
from affiliate_engine.models import utcnow

logger = logging.getLogger(__name__)

SUSPICIOUS_SCORE = 50


@dataclass
class FraudCheck:
    risk_score: int = 0
    reasons: list[str] = field(default_factory=list)

    @property
    def is_suspicious(self) -> bool:
        return self.risk_score >= SUSPICIOUS_SCORE

    def add(self, points: int, reason: str) -> None:
        self.risk_score = min(self.risk_score + points, 100)
        self.reasons.append(reason)


async def screen_commission(
    session: AsyncSession,
    affiliate: AffiliateRow,
    order: OrderRow,
    now: Optional[datetime] = None,
) -> FraudCheck:
    now = now or utcnow()
    check = FraudCheck()

    # Self-referral
    if order.customer_email and affiliate.email and \
            order.customer_email.strip().lower() == affiliate.email.strip().lower():
        check.add(50, "Order email matches the affiliate's email (self-referral)")

    # Repeated converted clicks from the buyer's IP
    if order.customer_ip and order.customer_ip != "unknown":
        same_ip = (await session.execute(
            select(func.count(AffiliateClickRow.id)).where(
                AffiliateClickRow.affiliate_id == affiliate.id,
                AffiliateClickRow.ip_address == order.customer_ip,
                AffiliateClickRow.converted.is_(True),
                AffiliateClickRow.clicked_at >= now - timedelta(hours=24),
            )
        )).scalar_one()
        if same_ip > 3:
            check.add(30, f"{same_ip} converted clicks from the same IP in 24h")
        elif same_ip > 1:
            check.add(15, f"{same_ip} converted clicks from the same IP in 24h")

    # Conversion rate over the last 3 days (normal is 1-5%)
    total, conversions = (await session.execute(
        select(
            func.count(AffiliateClickRow.id),
            func.sum(case((AffiliateClickRow.converted.is_(True), 1), else_=0)),
        ).where(
            AffiliateClickRow.affiliate_id == affiliate.id,
            AffiliateClickRow.clicked_at >= now - timedelta(days=3),
        )
    )).one()
    if total:
        rate = (conversions or 0) / total * 100
        if rate > 50:
            check.add(25, f"Conversion rate {rate:.1f}% over 3 days")
        elif rate > 25:
            check.add(10, f"High conversion rate {rate:.1f}% over 3 days")

    if check.is_suspicious:
        logger.warning(
            "Commission for order %s flagged (score %d): %s",
            order.id, check.risk_score, "; ".join(check.reasons),
        )
    return check
