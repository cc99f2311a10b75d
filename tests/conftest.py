"""Pytest configuration and shared fixtures for all tests."""

import os
import sys
import tempfile
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock

# Environment must be in place before core.config / core.database are imported
_DB_DIR = tempfile.mkdtemp(prefix="chainfund-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'ledger.db')}"
os.environ["APP_URL"] = "https://chainfund.test"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_chainfund"
os.environ["PAYSTACK_API_BASE"] = "https://paystack.test"
os.environ["CRON_SECRET"] = "cron-test-secret"
os.environ["ADMIN_SECRET"] = "admin-test-secret"
os.environ["CLICK_RATE_LIMIT_PER_MINUTE"] = "100000"
for _key in (
    "REDIS_URL",
    "PAYSTACK_WEBHOOK_SECRET",
    "ADMIN_ALLOWLIST_IPS",
    "RUN_PAYOUT_SCHEDULER",
    "FIREBASE_PROJECT_ID",
    "FIREBASE_SERVICE_ACCOUNT_JSON",
    "FIREBASE_SERVICE_ACCOUNT_JSON_PATH",
):
    os.environ.pop(_key, None)

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from core.database import Base, SessionLocal, engine, init_db
from models.campaigns import Campaign
from models.chainers import Chainer
from models.donations import Donation
from models.payouts import PayoutAccount
from utils.paystack import VerificationResult, TransferResult
from utils.referrals import generate_referral_code


@pytest.fixture(autouse=True)
def ledger_tables():
    """Fresh tables for every test."""
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from main import app

    return TestClient(app)


def fresh(db, model, row_id):
    """Re-read a row, dropping anything cached in the session."""
    db.expire_all()
    return db.get(model, row_id)


@pytest.fixture
def make_campaign(db):
    def _make(**overrides):
        values = dict(
            title="Clean water for Ikorodu",
            goal_amount=Decimal("1000000.00"),
            minimum_donation=Decimal("100.00"),
            currency="NGN",
            chainer_commission_rate=Decimal("5.0"),
            status="active",
        )
        values.update(overrides)
        campaign = Campaign(**values)
        db.add(campaign)
        db.commit()
        db.refresh(campaign)
        return campaign
    return _make


@pytest.fixture
def make_chainer(db):
    def _make(campaign, user_id="chainer-user", destination="keep", charity_choice_id=None, code=None, **overrides):
        chainer = Chainer(
            user_id=user_id,
            campaign_id=campaign.id,
            referral_code=code or generate_referral_code(),
            commission_destination=destination,
            charity_choice_id=charity_choice_id,
            **overrides,
        )
        db.add(chainer)
        db.commit()
        db.refresh(chainer)
        return chainer
    return _make


@pytest.fixture
def make_account(db):
    def _make(user_id="chainer-user", **overrides):
        values = dict(
            user_id=user_id,
            bank_code="058",
            bank_name="GTBank",
            account_number="0123456789",
            account_name="Ada Obi",
            recipient_code="RCP_test123",
            is_verified=True,
            is_locked=False,
            change_requested=False,
        )
        values.update(overrides)
        account = PayoutAccount(**values)
        db.add(account)
        db.commit()
        db.refresh(account)
        return account
    return _make


@pytest.fixture
def make_donation(db):
    counter = {"n": 0}

    def _make(campaign, donor_id="donor-1", amount="10000.00", chainer=None, status="pending", **overrides):
        counter["n"] += 1
        donation = Donation(
            campaign_id=campaign.id,
            donor_id=donor_id,
            chainer_id=chainer.id if chainer else None,
            amount=Decimal(amount),
            currency=campaign.currency,
            payment_status=status,
            payment_intent_id=f"donation_test{counter['n']}_1700000000000",
            **overrides,
        )
        db.add(donation)
        db.commit()
        db.refresh(donation)
        return donation
    return _make


@pytest.fixture
def paystack_says():
    """Build an async verifier returning a fixed provider answer."""
    def _make(amount_minor, currency="NGN", status="success"):
        async def _verify(reference):
            return VerificationResult(
                status=status,
                reference=reference,
                amount_minor=amount_minor,
                currency=currency,
                gateway_response="Approved" if status == "success" else "Declined",
            )
        return AsyncMock(side_effect=_verify)
    return _make


@pytest.fixture
def transfer_ok():
    async def _transfer(amount, recipient_code, reference, reason=""):
        return TransferResult(transfer_code=f"TRF_{reference}", status="success", reference=reference)
    return AsyncMock(side_effect=_transfer)
