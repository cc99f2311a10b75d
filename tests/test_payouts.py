"""Payout batch selection, claiming, disbursement and operator re-queue."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import fresh
from core.database import SessionLocal
from core.errors import DisbursementFailed, InvalidPayoutState, NotFound
from models.chainers import Chainer
from models.payouts import CommissionPayout
from utils.payouts import account_is_eligible, claim, requeue, run_batch, select_eligible


@pytest.fixture
def pending_payout(db, make_campaign, make_chainer, make_account):
    """A 500 NGN keep payout owed to a chainer with a verified account."""
    def _make(user_id="chainer-user", amount="500.00", account=True, created_at=None, **account_overrides):
        campaign = make_campaign()
        chainer = make_chainer(campaign, user_id=user_id, commission_earned=Decimal(amount))
        if account:
            make_account(user_id=user_id, **account_overrides)
        payout = CommissionPayout(
            donation_id=f"donation-for-{user_id}-{campaign.id}",
            chainer_id=chainer.id,
            campaign_id=campaign.id,
            amount=Decimal(amount),
            currency="NGN",
            destination="keep",
            status="pending",
        )
        if created_at is not None:
            payout.created_at = created_at
        db.add(payout)
        db.commit()
        db.refresh(payout)
        return payout, chainer
    return _make


class TestEligibility:
    def test_only_verified_unlocked_accounts(self, db, pending_payout):
        ok, _ = pending_payout(user_id="ok")
        pending_payout(user_id="unverified", is_verified=False)
        pending_payout(user_id="locked", is_locked=True)
        pending_payout(user_id="changing", change_requested=True, change_reason="new bank")
        pending_payout(user_id="norecipient", recipient_code=None)
        pending_payout(user_id="noaccount", account=False)

        assert select_eligible(db, 50) == [ok.id]

    def test_redirected_commissions_are_never_disbursed(self, db, pending_payout):
        payout, _ = pending_payout()
        db.query(CommissionPayout).update({CommissionPayout.destination: "donate_back"})
        db.commit()
        assert select_eligible(db, 50) == []

    def test_account_predicate(self, make_account):
        assert account_is_eligible(make_account(user_id="a")) is True
        assert account_is_eligible(make_account(user_id="b", is_locked=True)) is False
        assert account_is_eligible(None) is False

    def test_respects_limit(self, db, pending_payout):
        for i in range(3):
            pending_payout(user_id=f"user-{i}")
        assert len(select_eligible(db, 2)) == 2


class TestRunBatch:
    @pytest.mark.asyncio
    async def test_successful_disbursement(self, db, pending_payout, transfer_ok):
        payout, chainer = pending_payout()

        summary = await run_batch(db, 10, disburse=transfer_ok)

        assert summary["claimed"] == 1
        assert summary["completed"] == 1
        assert summary["failed"] == 0
        transfer_ok.assert_awaited_once()
        args = transfer_ok.await_args.args
        assert args[0] == Decimal("500.00")
        assert args[1] == "RCP_test123"
        assert args[2] == f"commission_{payout.id}"

        stored = fresh(db, CommissionPayout, payout.id)
        assert stored.status == "completed"
        assert stored.transaction_id == f"TRF_commission_{payout.id}"
        assert stored.processed_at is not None
        paid = fresh(db, Chainer, chainer.id)
        assert paid.commission_earned == Decimal("0.00")
        assert paid.commission_paid is True

    @pytest.mark.asyncio
    async def test_failure_is_terminal_until_requeued(self, db, pending_payout):
        payout, chainer = pending_payout()
        disburse = AsyncMock(side_effect=DisbursementFailed("Transfer rejected: invalid account"))

        summary = await run_batch(db, 10, disburse=disburse)

        assert summary["failed"] == 1
        stored = fresh(db, CommissionPayout, payout.id)
        assert stored.status == "failed"
        assert "invalid account" in stored.notes
        assert fresh(db, Chainer, chainer.id).commission_earned == Decimal("500.00")

        again = await run_batch(db, 10, disburse=disburse)
        assert again["claimed"] == 0
        assert disburse.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_leaves_payout_processing(self, db, pending_payout):
        payout, _ = pending_payout()
        disburse = AsyncMock(side_effect=DisbursementFailed("Transfer request timed out", timed_out=True))

        summary = await run_batch(db, 10, disburse=disburse)

        assert (summary["claimed"], summary["completed"], summary["failed"]) == (1, 0, 0)
        assert summary["results"][0]["status"] == "processing"
        stored = fresh(db, CommissionPayout, payout.id)
        assert stored.status == "processing"
        assert "outcome unknown" in stored.notes

    @pytest.mark.asyncio
    async def test_oldest_first(self, db, pending_payout, transfer_ok):
        now = datetime.now(timezone.utc)
        pending_payout(user_id="late", created_at=now)
        first, _ = pending_payout(user_id="early", created_at=now - timedelta(hours=1))

        summary = await run_batch(db, 1, disburse=transfer_ok)

        assert [r["id"] for r in summary["results"]] == [first.id]

    @pytest.mark.asyncio
    async def test_concurrent_batches_never_share_a_payout(self, db, pending_payout):
        ids = {pending_payout(user_id=f"user-{i}")[0].id for i in range(5)}
        seen = []

        async def disburse(amount, recipient_code, reference, reason=""):
            seen.append(reference)
            await asyncio.sleep(0.01)
            from utils.paystack import TransferResult
            return TransferResult(transfer_code=f"TRF_{reference}", status="success", reference=reference)

        sessions = [SessionLocal(), SessionLocal()]
        try:
            a, b = await asyncio.gather(*(run_batch(s, 10, disburse=disburse) for s in sessions))
        finally:
            for s in sessions:
                s.close()

        assert a["claimed"] + b["claimed"] == len(ids)
        assert len(seen) == len(set(seen)) == len(ids)
        db.expire_all()
        assert {p.status for p in db.query(CommissionPayout).all()} == {"completed"}

    def test_claim_is_exclusive(self, db, pending_payout):
        payout, _ = pending_payout()
        other = SessionLocal()
        try:
            assert claim(db, [payout.id]) == [payout.id]
            assert claim(other, [payout.id]) == []
        finally:
            other.close()


class TestRequeue:
    @pytest.mark.asyncio
    async def test_failed_payout_goes_back_to_pending(self, db, pending_payout, transfer_ok):
        payout, _ = pending_payout()
        await run_batch(db, 10, disburse=AsyncMock(side_effect=DisbursementFailed("bank offline")))

        requeued = requeue(db, payout.id, "bank details fixed")

        assert requeued.status == "pending"
        assert "requeued by operator: bank details fixed" in requeued.notes
        assert "bank offline" in requeued.notes

        summary = await run_batch(db, 10, disburse=transfer_ok)
        assert summary["completed"] == 1

    def test_pending_or_completed_cannot_be_requeued(self, db, pending_payout):
        payout, _ = pending_payout()
        with pytest.raises(InvalidPayoutState):
            requeue(db, payout.id)

    def test_unknown_payout(self, db):
        with pytest.raises(NotFound):
            requeue(db, "missing")
