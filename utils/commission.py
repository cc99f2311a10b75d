"""
Commission calculation and settlement.

Each completed, attributed donation yields at most one CommissionPayout,
keyed by donation_id. Where the money goes depends on the chainer's
destination at settlement time:

- keep: a pending payout, disbursed later by the batch processor
- donate_back: a completed commission donation to the same campaign
- donate_other: a completed commission donation to charity_choice_id
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from sqlalchemy.orm import Session

from core.config import logger
from core.errors import InvalidDestination
from models.chainers import Chainer
from models.donations import Donation
from models.payouts import CommissionPayout
from utils.ledger import as_money, credit_campaign, increment, insert_if_absent, utcnow

CENT = Decimal("0.01")


@dataclass(frozen=True)
class Keep:
    pass


@dataclass(frozen=True)
class DonateBack:
    campaign_id: str


@dataclass(frozen=True)
class DonateOther:
    campaign_id: str


Destination = Union[Keep, DonateBack, DonateOther]


def compute_commission(amount, rate_percent) -> Decimal:
    """amount * rate / 100, rounded half-up to the cent."""
    value = Decimal(str(amount)) * Decimal(str(rate_percent)) / Decimal(100)
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def destination_for(chainer: Chainer) -> Destination:
    kind = chainer.commission_destination or "keep"
    if kind == "keep":
        return Keep()
    if kind == "donate_back":
        return DonateBack(campaign_id=chainer.campaign_id)
    if kind == "donate_other":
        if not chainer.charity_choice_id:
            raise InvalidDestination(f"Chainer {chainer.id} chose donate_other without a destination campaign")
        return DonateOther(campaign_id=chainer.charity_choice_id)
    raise InvalidDestination(f"Chainer {chainer.id} has unknown destination {kind!r}")


def _redirect_to_campaign(db: Session, payout: CommissionPayout, chainer: Chainer, campaign_id: str) -> None:
    gift = Donation(
        campaign_id=campaign_id,
        donor_id=chainer.user_id,
        amount=payout.amount,
        currency=payout.currency,
        payment_status="completed",
        payment_method="commission",
        payment_intent_id=f"commission_{payout.donation_id}",
        message=f"Chainer commission from donation {payout.donation_id}",
        processed_at=utcnow(),
    )
    if insert_if_absent(db, gift):
        credit_campaign(db, campaign_id, payout.amount)
        gift_id = gift.id
    else:
        # Already redirected and credited; link the payout to the existing gift
        gift_id = (
            db.query(Donation.id)
            .filter(Donation.payment_intent_id == f"commission_{payout.donation_id}")
            .scalar()
        )
    payout.status = "completed"
    payout.destination_campaign_id = campaign_id
    payout.transaction_id = gift_id
    payout.processed_at = utcnow()
    db.flush()


def settle(
    db: Session,
    *,
    donation_id: str,
    campaign_id: str,
    amount,
    currency: str,
    rate_percent,
    chainer: Chainer,
) -> Optional[CommissionPayout]:
    """Record the commission for one completed donation. Does not commit.

    Returns the payout (existing one on replay), or None when the commission
    rounds to zero.
    """
    commission = compute_commission(amount, rate_percent)
    if commission <= 0:
        logger.info(f"[commission.settle] donation={donation_id} commission rounds to 0, skipping")
        return None

    destination = destination_for(chainer)
    kind = chainer.commission_destination or "keep"

    payout = CommissionPayout(
        donation_id=donation_id,
        chainer_id=chainer.id,
        campaign_id=campaign_id,
        amount=commission,
        currency=currency,
        destination=kind,
        status="pending",
    )
    if not insert_if_absent(db, payout):
        existing = db.query(CommissionPayout).filter(CommissionPayout.donation_id == donation_id).first()
        logger.info(f"[commission.settle] donation={donation_id} already settled payout={existing.id if existing else '-'}")
        return existing

    if isinstance(destination, Keep):
        increment(db, Chainer, chainer.id, commission_earned=commission)
        db.query(Chainer).filter(Chainer.id == chainer.id).update(
            {Chainer.commission_paid: False}, synchronize_session=False
        )
    else:
        _redirect_to_campaign(db, payout, chainer, destination.campaign_id)

    logger.info(
        f"[commission.settle] donation={donation_id} chainer={chainer.id} amount={commission} {currency} "
        f"destination={kind} payout={payout.id} status={payout.status}"
    )
    return payout


def payout_to_dict(p: CommissionPayout) -> dict:
    return {
        "id": p.id,
        "donation_id": p.donation_id,
        "chainer_id": p.chainer_id,
        "campaign_id": p.campaign_id,
        "amount": as_money(p.amount),
        "currency": p.currency,
        "destination": p.destination,
        "destination_campaign_id": p.destination_campaign_id,
        "status": p.status,
        "transaction_id": p.transaction_id,
        "notes": p.notes,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "processed_at": p.processed_at.isoformat() if p.processed_at else None,
    }
