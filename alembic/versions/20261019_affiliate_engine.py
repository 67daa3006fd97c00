"""Affiliate engine tables: affiliates, clicks, commissions, payout accounts and attempts.

Revision ID: 5e1f0a2b9c7d
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "5e1f0a2b9c7d"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "site_settings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("affiliate_cookie_days", sa.Integer, nullable=False, server_default="30"),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "affiliates",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True, index=True),
        sa.Column("custom_slug", sa.String(40), unique=True, index=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(320), nullable=False, index=True),
        sa.Column("affiliate_class", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("commission_type", sa.String(10), nullable=False, server_default="percent"),
        sa.Column("commission_value", sa.String(32), nullable=False, server_default="0"),
        sa.Column("preferred_rail", sa.String(30)),
        sa.Column("payment_automation_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("status_changed_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "affiliate_links",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("affiliate_id", sa.String(36), sa.ForeignKey("affiliates.id"), nullable=False, index=True),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("clicks", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("affiliate_id", "product_id", name="uq_affiliate_link_product"),
    )
    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("total_minor", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="BRL"),
        sa.Column("payment_state", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("customer_email", sa.String(320)),
        sa.Column("customer_ip", sa.String(45)),
        sa.Column("affiliate_id", sa.String(36), sa.ForeignKey("affiliates.id"), index=True),
        sa.Column("affiliate_link_id", sa.String(36), sa.ForeignKey("affiliate_links.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_orders_affiliate_created", "orders", ["affiliate_id", "created_at"])

    op.create_table(
        "affiliate_clicks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("affiliate_id", sa.String(36), sa.ForeignKey("affiliates.id"), nullable=False, index=True),
        sa.Column("link_id", sa.String(36), sa.ForeignKey("affiliate_links.id")),
        sa.Column("target_ref", sa.String(100)),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("user_agent", sa.String(500)),
        sa.Column("referer", sa.String(1000)),
        sa.Column("device_type", sa.String(10)),
        sa.Column("converted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=False, index=True),
    )
    op.create_index("idx_click_affiliate_time", "affiliate_clicks", ["affiliate_id", "clicked_at"])

    op.create_table(
        "affiliate_commissions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("affiliate_id", sa.String(36), sa.ForeignKey("affiliates.id"), nullable=False, index=True),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False, index=True),
        sa.Column("order_total_minor", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("commission_type", sa.String(10), nullable=False),
        sa.Column("commission_value", sa.String(32), nullable=False),
        sa.Column("amount_minor", sa.BigInteger, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("payment_method", sa.String(30)),
        sa.Column("proof_reference", sa.String(500)),
        sa.Column("notes", sa.Text),
        sa.Column("risk_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("requires_manual_review", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_payout_error", sa.Text),
        sa.Column("payout_attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("payout_claim_token", sa.String(36)),
        sa.Column("payout_claimed_at", sa.DateTime(timezone=True)),
        sa.Column("approved_by", sa.String(100)),
        sa.Column("cancel_reason", sa.String(200)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("affiliate_id", "order_id", name="uq_commission_affiliate_order"),
    )
    op.create_index("idx_commission_status_created", "affiliate_commissions", ["status", "created_at"])

    op.create_table(
        "payout_accounts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("affiliate_id", sa.String(36), sa.ForeignKey("affiliates.id"), nullable=False, index=True),
        sa.Column("rail", sa.String(30), nullable=False),
        sa.Column("external_account_id", sa.String(255), index=True),
        sa.Column("access_token", sa.String(500)),
        sa.Column("details", sa.JSON),
        sa.Column("onboarding_status", sa.String(20), nullable=False, server_default="not_started"),
        sa.Column("connected", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("payouts_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("onboarded_at", sa.DateTime(timezone=True)),
        sa.Column("last_checked_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("affiliate_id", "rail", name="uq_payout_account_rail"),
    )
    op.create_table(
        "payout_attempts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("commission_id", sa.String(36), sa.ForeignKey("affiliate_commissions.id"),
                  nullable=False, index=True),
        sa.Column("rail", sa.String(30), nullable=False),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("idempotency_key", sa.String(100), nullable=False, index=True),
        sa.Column("transfer_id", sa.String(255)),
        sa.Column("amount_minor", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("error", sa.Text),
        sa.Column("outcome_unknown", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "order_payment_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("event_id", sa.String(255), unique=True),
        sa.Column("order_id", sa.String(36), nullable=False, index=True),
        sa.Column("payment_state", sa.String(20), nullable=False),
        sa.Column("source", sa.String(30), nullable=False, server_default="checkout"),
        sa.Column("action", sa.String(30)),
        sa.Column("payload", sa.JSON),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, index=True),
    )


def downgrade() -> None:
    op.drop_table("order_payment_events")
    op.drop_table("payout_attempts")
    op.drop_table("payout_accounts")
    op.drop_index("idx_commission_status_created", table_name="affiliate_commissions")
    op.drop_table("affiliate_commissions")
    op.drop_index("idx_click_affiliate_time", table_name="affiliate_clicks")
    op.drop_table("affiliate_clicks")
    op.drop_index("ix_orders_affiliate_created", table_name="orders")
    op.drop_table("orders")
    op.drop_table("affiliate_links")
    op.drop_table("affiliates")
    op.drop_table("site_settings")
