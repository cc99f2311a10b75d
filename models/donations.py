"""
Donation record (owned by the campaigns service).
payment_status moves pending -> completed | failed exactly once.
"""
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Text, Numeric
from sqlalchemy.sql import func
from core.database import Base

PAYMENT_STATUSES = ("pending", "completed", "failed")


class Donation(Base):
    __tablename__ = "donations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    campaign_id = Column(String(36), index=True, nullable=False)
    donor_id = Column(String(128), index=True, nullable=False)
    chainer_id = Column(String(36), index=True, nullable=True)  # set only when attributed

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(50), nullable=False, default="paystack")  # paystack, commission
    payment_intent_id = Column(String(255), unique=True, index=True, nullable=True)  # provider reference
    provider_status = Column(String(50), nullable=True)
    provider_error = Column(Text, nullable=True)

    message = Column(Text, nullable=True)
    is_anonymous = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
