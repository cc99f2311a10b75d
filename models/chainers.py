"""
Referral models
- chainers: (user, campaign) referral relationship and its counters
- link_clicks: append-only click log
- referrals: first-touch / converted referral per (chainer, donor, campaign)
"""
import uuid
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, Numeric, UniqueConstraint
from sqlalchemy.sql import func
from core.database import Base

DESTINATIONS = ("keep", "donate_back", "donate_other")


class Chainer(Base):
    __tablename__ = "chainers"
    __table_args__ = (UniqueConstraint("user_id", "campaign_id", name="uq_chainers_user_campaign"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(128), index=True, nullable=False)
    campaign_id = Column(String(36), index=True, nullable=False)

    # Issued once, never rewritten
    referral_code = Column(String(50), unique=True, index=True, nullable=False)

    commission_destination = Column(String(20), nullable=False, default="keep")  # keep, donate_back, donate_other
    charity_choice_id = Column(String(36), nullable=True)  # destination campaign when donate_other

    # Aggregate counters, only ever changed with in-database arithmetic
    total_raised = Column(Numeric(12, 2), nullable=False, default=0)
    total_referrals = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    commission_earned = Column(Numeric(12, 2), nullable=False, default=0)
    commission_paid = Column(Boolean, nullable=False, default=False)

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LinkClick(Base):
    __tablename__ = "link_clicks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    chainer_id = Column(String(36), index=True, nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    clicked_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Referral(Base):
    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referrer_id", "referred_id", "campaign_id", name="uq_referrals_referrer_referred_campaign"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    referrer_id = Column(String(36), index=True, nullable=False)  # chainer id
    referred_id = Column(String(128), index=True, nullable=False)  # donor user id
    campaign_id = Column(String(36), index=True, nullable=False)
    referral_code = Column(String(50), nullable=False)
    is_converted = Column(Boolean, nullable=False, default=False)  # flips once, never back

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    converted_at = Column(DateTime(timezone=True), nullable=True)
