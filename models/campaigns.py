"""
Campaign model (owned by the campaigns service).
Only the columns the referral core reads or updates are mapped here.
"""
import uuid
from sqlalchemy import Column, String, DateTime, Numeric
from sqlalchemy.sql import func
from core.database import Base


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, index=True, nullable=True)
    creator_id = Column(String(128), index=True, nullable=True)

    goal_amount = Column(Numeric(12, 2), nullable=False)
    current_amount = Column(Numeric(12, 2), nullable=False, default=0)
    minimum_donation = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)  # NGN, USD, GBP
    chainer_commission_rate = Column(Numeric(4, 1), nullable=False, default=5)  # percent, 1.0-10.0

    status = Column(String(20), nullable=False, default="active")  # active, paused, goal_reached, closed

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
