"""
Donation creation and referral attribution.

A referral code can only ever add information to a donation. A missing,
unknown, inactive or mismatched code leaves the donation unattributed and
the donor never sees an error for it.
"""
import time
import uuid
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import logger
from core.errors import InvalidDonation, InvalidReferralCode, NotFound
from models.campaigns import Campaign
from models.chainers import Chainer, Referral
from models.donations import Donation
from utils.ledger import as_money, increment, insert_if_absent
from utils.referrals import resolve


@dataclass
class AttributionResult:
    attributed: bool
    reason: str
    chainer_id: Optional[str] = None
    referral_id: Optional[str] = None
    referral_created: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def attribute(db: Session, donation: Donation, referral_code: Optional[str]) -> AttributionResult:
    """Bind a flushed, pending donation to the chainer behind `referral_code`.

    The (chainer, donor, campaign) referral is created on first sight only;
    repeat donations reuse it and leave is_converted alone.
    """
    if not referral_code:
        return AttributionResult(attributed=False, reason="no_code")
    try:
        ref = resolve(db, referral_code)
    except InvalidReferralCode as ex:
        logger.info(f"[donations.attribute] donation={donation.id} unattributed: {ex.message}")
        return AttributionResult(attributed=False, reason="invalid_code")

    if ref.campaign_id != donation.campaign_id:
        logger.info(
            f"[donations.attribute] donation={donation.id} code={ref.referral_code} "
            f"belongs to campaign={ref.campaign_id}, not {donation.campaign_id}"
        )
        return AttributionResult(attributed=False, reason="campaign_mismatch")

    donation.chainer_id = ref.chainer_id
    db.flush()

    created = insert_if_absent(db, Referral(
        referrer_id=ref.chainer_id,
        referred_id=donation.donor_id,
        campaign_id=donation.campaign_id,
        referral_code=ref.referral_code,
        is_converted=False,
    ))
    if created:
        increment(db, Chainer, ref.chainer_id, total_referrals=1)

    referral = (
        db.query(Referral)
        .filter(
            Referral.referrer_id == ref.chainer_id,
            Referral.referred_id == donation.donor_id,
            Referral.campaign_id == donation.campaign_id,
        )
        .first()
    )
    logger.info(
        f"[donations.attribute] donation={donation.id} chainer={ref.chainer_id} "
        f"referral={referral.id if referral else '-'} created={created}"
    )
    return AttributionResult(
        attributed=True,
        reason="attributed",
        chainer_id=ref.chainer_id,
        referral_id=referral.id if referral else None,
        referral_created=created,
    )


def _parse_amount(raw) -> Decimal:
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidDonation("Amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidDonation("Amount must be greater than 0")
    if amount.as_tuple().exponent < -2:
        raise InvalidDonation("Amount supports at most 2 decimal places")
    return amount


def new_payment_reference(donation_id: str) -> str:
    return f"donation_{donation_id}_{int(time.time() * 1000)}"


def create_donation(
    db: Session,
    *,
    campaign_id: str,
    donor_id: str,
    amount,
    currency: str,
    payment_method: str = "paystack",
    message: Optional[str] = None,
    is_anonymous: bool = False,
    referral_code: Optional[str] = None,
) -> tuple[Donation, AttributionResult]:
    if not campaign_id or not donor_id or not currency:
        raise InvalidDonation("Missing required fields")
    value = _parse_amount(amount)

    campaign = db.query(Campaign).filter(Campaign.id == campaign_id).first()
    if not campaign:
        raise NotFound(f"Campaign {campaign_id} not found")
    if campaign.status != "active":
        raise InvalidDonation("Campaign is not active")
    cur = currency.strip().upper()
    if cur != (campaign.currency or "").upper():
        raise InvalidDonation(f"Campaign accepts {campaign.currency} only")
    minimum = Decimal(str(campaign.minimum_donation or 0))
    if value < minimum:
        raise InvalidDonation(f"Minimum donation amount is {campaign.currency} {minimum}")

    donation_id = str(uuid.uuid4())
    donation = Donation(
        id=donation_id,
        campaign_id=campaign_id,
        donor_id=donor_id,
        amount=value,
        currency=cur,
        payment_status="pending",
        payment_method=payment_method or "paystack",
        payment_intent_id=new_payment_reference(donation_id),
        message=message,
        is_anonymous=bool(is_anonymous),
    )
    db.add(donation)
    db.flush()

    try:
        with db.begin_nested():
            result = attribute(db, donation, referral_code)
    except SQLAlchemyError as ex:
        logger.exception(f"[donations.attribute] donation={donation_id} attribution failed, continuing unattributed: {ex}")
        donation.chainer_id = None
        result = AttributionResult(attributed=False, reason="error")

    db.commit()
    db.refresh(donation)
    logger.info(
        f"[donations.create] donation={donation.id} campaign={campaign_id} amount={value} {cur} "
        f"reference={donation.payment_intent_id} attributed={result.attributed}"
    )
    return donation, result


def donation_to_dict(d: Donation) -> dict:
    return {
        "id": d.id,
        "campaign_id": d.campaign_id,
        "donor_id": None if d.is_anonymous else d.donor_id,
        "chainer_id": d.chainer_id,
        "amount": as_money(d.amount),
        "currency": d.currency,
        "payment_status": d.payment_status,
        "payment_method": d.payment_method,
        "payment_intent_id": d.payment_intent_id,
        "is_anonymous": bool(d.is_anonymous),
        "created_at": d.created_at.isoformat() if d.created_at else None,
        "processed_at": d.processed_at.isoformat() if d.processed_at else None,
    }
