"""
Commission payout models
- commission_payouts: one row per commissioned donation
- payout_accounts: a user's verified bank account for disbursement
"""
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Text, Numeric
from sqlalchemy.sql import func
from core.database import Base

# processing is the claim marker between pending and a terminal state
PAYOUT_STATUSES = ("pending", "processing", "completed", "failed")


class CommissionPayout(Base):
    __tablename__ = "commission_payouts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    donation_id = Column(String(36), unique=True, index=True, nullable=False)
    chainer_id = Column(String(36), index=True, nullable=False)
    campaign_id = Column(String(36), index=True, nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    destination = Column(String(20), nullable=False)  # keep, donate_back, donate_other
    destination_campaign_id = Column(String(36), nullable=True)

    status = Column(String(20), index=True, nullable=False, default="pending")
    transaction_id = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class PayoutAccount(Base):
    __tablename__ = "payout_accounts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(128), unique=True, index=True, nullable=False)

    bank_code = Column(String(20), nullable=True)
    bank_name = Column(String(255), nullable=True)
    account_number = Column(String(34), nullable=True)
    account_name = Column(String(255), nullable=True)
    currency = Column(String(3), nullable=False, default="NGN")
    recipient_code = Column(String(100), nullable=True)  # provider transfer recipient

    is_verified = Column(Boolean, nullable=False, default=False)
    is_locked = Column(Boolean, nullable=False, default=False)
    change_requested = Column(Boolean, nullable=False, default=False)
    change_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
