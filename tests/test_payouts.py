"""Tests for the payout dispatcher: rail selection, failures, retries and claims."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from affiliate_engine.db.affiliate_tables import PayoutAttemptRow
from affiliate_engine.errors import PermanentFailure, TransientFailure
from affiliate_engine.models import utcnow
from affiliate_engine.services import notifications
from affiliate_engine.services.commissions import (
    cancel_commission, create_commission_for_order, flag_for_review, mark_paid, reload_commission,
)
from affiliate_engine.services.payout_accounts import get_affiliate
from affiliate_engine.services.payouts import DispatchResult, dispatch, dispatch_approved_batch
from config.settings import settings


async def _attempts(session, commission_id):
    result = await session.execute(
        select(PayoutAttemptRow)
        .where(PayoutAttemptRow.commission_id == commission_id)
        .order_by(PayoutAttemptRow.created_at)
    )
    return list(result.scalars().all())


# ── Happy path and gates ─────────────────────────────────────────────────────

class TestAutomaticPayout:
    @pytest.mark.asyncio
    async def test_connected_affiliate_paid(self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate, external_account_id="acct_alice")
        _, commission = await approved_commission(db_session, affiliate=affiliate)

        result = await dispatch(db_session, commission.id)

        assert result.success is True
        assert result.transfer_id == "tr_1"
        assert result.amount == "20.00"
        assert result.currency == "BRL"
        assert result.rail == "stripe_connect"

        paid = await reload_commission(db_session, commission.id)
        assert paid.status == "paid"
        assert paid.payment_method == "stripe_connect"
        assert paid.proof_reference == "tr_1"
        assert paid.payout_claim_token is None
        assert paid.payout_attempt_count == 1
        assert fake_rail.transfer_calls == 1
        assert list(fake_rail.transfers) == [f"commission_payout_{commission.id}"]
        assert [a.outcome for a in await _attempts(db_session, commission.id)] == ["success"]
        assert [e["type"] for e in notifications.recent_events()].count("commission.paid") == 1

    @pytest.mark.asyncio
    async def test_repeat_dispatch_moves_money_once(self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        _, commission = await approved_commission(db_session, affiliate=affiliate)

        first = await dispatch(db_session, commission.id)
        second = await dispatch(db_session, commission.id)
        third = await dispatch(db_session, commission.id)

        assert first.success is True
        assert second.success is False and second.reason == "AlreadyPaid"
        assert third.reason == "AlreadyPaid"
        assert second.transfer_id == first.transfer_id
        assert fake_rail.transfer_calls == 1

    @pytest.mark.asyncio
    async def test_pending_not_dispatched(self, db_session, make_affiliate, make_order, fake_rail):
        affiliate = await make_affiliate(db_session)
        order = await make_order(db_session, affiliate_id=affiliate.id)
        commission = await create_commission_for_order(db_session, order.id)

        result = await dispatch(db_session, commission.id)

        assert result.reason == "NotApproved"
        assert fake_rail.transfer_calls == 0

    @pytest.mark.asyncio
    async def test_cancelled_not_dispatched(self, db_session, approved_commission, fake_rail):
        _, commission = await approved_commission(db_session)
        await cancel_commission(db_session, commission.id)
        result = await dispatch(db_session, commission.id)
        assert result.reason == "NotApproved"

    @pytest.mark.asyncio
    async def test_manually_paid_not_dispatched(self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        _, commission = await approved_commission(db_session, affiliate=affiliate)
        await mark_paid(db_session, commission.id, "PIX-E2E-1")

        result = await dispatch(db_session, commission.id)

        assert result.reason == "AlreadyPaid"
        assert fake_rail.transfer_calls == 0

    def test_result_dict_drops_empty_fields(self):
        result = DispatchResult(success=False, commission_id="c-1", reason="NotApproved", message="Commission is pending")
        assert result.to_dict() == {
            "success": False, "commission_id": "c-1", "reason": "NotApproved",
            "message": "Commission is pending", "requires_manual_review": False,
        }


# ── Rail selection ───────────────────────────────────────────────────────────

class TestRailSelection:
    @pytest.mark.asyncio
    async def test_onboarding_incomplete_then_completed(
        self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail,
    ):
        fake_rail.ready = False
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate, ready=False)
        _, commission = await approved_commission(db_session, affiliate=affiliate)

        first = await dispatch(db_session, commission.id)

        assert first.success is False
        assert first.reason == "NeedsOnboarding"
        assert first.rail == "stripe_connect"
        assert first.requires_manual_review is False
        still = await reload_commission(db_session, commission.id)
        assert still.status == "approved"
        assert still.requires_manual_review is False
        assert fake_rail.status_checks == 1
        assert fake_rail.transfer_calls == 0

        fake_rail.ready = True
        second = await dispatch(db_session, commission.id)

        assert second.success is True
        assert (await reload_commission(db_session, commission.id)).status == "paid"
        affiliate = await get_affiliate(db_session, affiliate.id)
        assert affiliate.preferred_rail == "stripe_connect"
        assert affiliate.payment_automation_enabled is True

    @pytest.mark.asyncio
    async def test_no_rail_goes_to_manual_review(self, db_session, approved_commission, fake_rail):
        _, commission = await approved_commission(db_session)

        result = await dispatch(db_session, commission.id)

        assert result.reason == "RailNotReady"
        assert result.requires_manual_review is True
        flagged = await reload_commission(db_session, commission.id)
        assert flagged.status == "approved"
        assert flagged.requires_manual_review is True
        assert [a.outcome for a in await _attempts(db_session, commission.id)] == ["rail_not_ready"]

        paid = await mark_paid(db_session, commission.id, "PIX-E2E-9")
        assert paid.status == "paid"
        assert paid.requires_manual_review is False

    @pytest.mark.asyncio
    async def test_manual_preference(self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        affiliate.preferred_rail = "manual"
        affiliate.payment_automation_enabled = False
        await db_session.commit()
        _, commission = await approved_commission(db_session, affiliate=affiliate)

        result = await dispatch(db_session, commission.id)

        assert result.reason == "RailNotReady"
        assert fake_rail.transfer_calls == 0

    @pytest.mark.asyncio
    async def test_automation_switched_off(self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        affiliate.payment_automation_enabled = False
        await db_session.commit()
        _, commission = await approved_commission(db_session, affiliate=affiliate)

        result = await dispatch(db_session, commission.id)

        assert result.reason == "RailNotReady"
        assert fake_rail.transfer_calls == 0

    @pytest.mark.asyncio
    async def test_no_preference_still_needs_automation(
        self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail,
    ):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        affiliate.preferred_rail = None
        affiliate.payment_automation_enabled = False
        await db_session.commit()
        _, commission = await approved_commission(db_session, affiliate=affiliate)

        result = await dispatch(db_session, commission.id)

        assert result.reason == "RailNotReady"
        assert result.requires_manual_review is True
        assert fake_rail.transfer_calls == 0
        assert (await reload_commission(db_session, commission.id)).status == "approved"


# ── Failures and retries ─────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_then_retry(self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        _, commission = await approved_commission(db_session, affiliate=affiliate)
        fake_rail.fail_with = TransientFailure("stripe_connect: upstream 503", rail_code="api_error")

        first = await dispatch(db_session, commission.id)

        assert first.reason == "TransientFailure"
        assert first.requires_manual_review is False
        after = await reload_commission(db_session, commission.id)
        assert after.status == "approved"
        assert after.requires_manual_review is False
        assert after.payout_claim_token is None
        assert "upstream 503" in after.last_payout_error

        fake_rail.fail_with = None
        second = await dispatch(db_session, commission.id)

        assert second.success is True
        assert fake_rail.lookups == 1
        assert fake_rail.transfer_calls == 2
        outcomes = [a.outcome for a in await _attempts(db_session, commission.id)]
        assert outcomes == ["transient_failure", "success"]
        assert (await reload_commission(db_session, commission.id)).payout_attempt_count == 2

    @pytest.mark.asyncio
    async def test_lost_response_recovered_by_lookup(
        self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail,
    ):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        _, commission = await approved_commission(db_session, affiliate=affiliate)
        fake_rail.lose_response = True

        first = await dispatch(db_session, commission.id)
        assert first.reason == "TransientFailure"
        attempts = await _attempts(db_session, commission.id)
        assert attempts[0].outcome_unknown is True

        second = await dispatch(db_session, commission.id)

        assert second.success is True
        assert second.transfer_id == "tr_1"
        assert fake_rail.transfer_calls == 1
        assert len(fake_rail.transfers) == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_flags_but_keeps_debt(
        self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail,
    ):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        _, commission = await approved_commission(db_session, affiliate=affiliate)
        fake_rail.fail_with = PermanentFailure("stripe_connect: account frozen", rail_code="account_frozen")

        result = await dispatch(db_session, commission.id)

        assert result.reason == "PermanentFailure"
        assert result.requires_manual_review is True
        after = await reload_commission(db_session, commission.id)
        assert after.status == "approved"
        assert after.requires_manual_review is True
        assert "account frozen" in after.last_payout_error

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_claim(
        self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail,
    ):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        _, commission = await approved_commission(db_session, affiliate=affiliate)
        commission_id = commission.id
        fake_rail.fail_with = RuntimeError("driver bug")

        with pytest.raises(RuntimeError):
            await dispatch(db_session, commission_id)

        after = await reload_commission(db_session, commission_id)
        assert after.status == "approved"
        assert after.payout_claim_token is None
        assert after.payout_claimed_at is None


class TestClaims:
    @pytest.mark.asyncio
    async def test_live_claim_blocks_second_dispatcher(
        self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail,
    ):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        _, commission = await approved_commission(db_session, affiliate=affiliate)
        commission.payout_claim_token = "another-worker"
        commission.payout_claimed_at = utcnow()
        await db_session.commit()

        result = await dispatch(db_session, commission.id)

        assert result.reason == "TransientFailure"
        assert "in progress" in result.message
        assert fake_rail.transfer_calls == 0

    @pytest.mark.asyncio
    async def test_expired_claim_is_taken_over(
        self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail,
    ):
        affiliate = await make_affiliate(db_session)
        await connect_rail(db_session, affiliate)
        _, commission = await approved_commission(db_session, affiliate=affiliate)
        commission.payout_claim_token = "crashed-worker"
        commission.payout_claimed_at = utcnow() - timedelta(seconds=settings.PAYOUT_CLAIM_LEASE_SECONDS + 60)
        await db_session.commit()

        result = await dispatch(db_session, commission.id)

        assert result.success is True
        assert fake_rail.transfer_calls == 1


# ── Batch ────────────────────────────────────────────────────────────────────

class TestBatch:
    @pytest.mark.asyncio
    async def test_batch_skips_flagged(self, db_session, make_affiliate, connect_rail, approved_commission, fake_rail):
        alice = await make_affiliate(db_session, code="ALICE01")
        await connect_rail(db_session, alice, external_account_id="acct_alice")
        _, paid_one = await approved_commission(db_session, affiliate=alice)
        await approved_commission(db_session, code="BOB0001")
        _, flagged = await approved_commission(db_session, code="CAROL01")
        await flag_for_review(db_session, flagged.id, "checked by hand")

        summary = await dispatch_approved_batch(db_session)

        assert summary["processed"] == 2
        assert summary["paid"] == 1
        assert summary["failed"] == {"RailNotReady": 1}
        assert (await reload_commission(db_session, paid_one.id)).status == "paid"
        assert (await reload_commission(db_session, flagged.id)).status == "approved"

        again = await dispatch_approved_batch(db_session)
        assert again["processed"] == 0
