"""
Referral link resolution, click tracking and chainer enrolment.
"""
import secrets
import string
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import logger, APP_URL, REFERRAL_CODE_LENGTH
from core.errors import InvalidReferralCode, InvalidDestination, NotFound
from models.campaigns import Campaign
from models.chainers import Chainer, LinkClick, DESTINATIONS
from models.payouts import CommissionPayout
from utils.ledger import as_money, increment, insert_if_absent

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_MAX_CODE_ATTEMPTS = 5


@dataclass(frozen=True)
class ResolvedReferral:
    chainer_id: str
    campaign_id: str
    user_id: str
    referral_code: str


def resolve(db: Session, code: str) -> ResolvedReferral:
    """Map a referral code to its live chainer. Case-sensitive, read-only."""
    rc = code or ""
    if not rc.strip():
        raise InvalidReferralCode("Referral code is empty")
    chainer = (
        db.query(Chainer)
        .filter(Chainer.referral_code == rc)
        .first()
    )
    if not chainer or not chainer.is_active:
        raise InvalidReferralCode(f"No active chainer holds referral code {rc!r}")
    return ResolvedReferral(
        chainer_id=chainer.id,
        campaign_id=chainer.campaign_id,
        user_id=chainer.user_id,
        referral_code=chainer.referral_code,
    )


def campaign_redirect_path(campaign_id: str, code: str) -> str:
    return f"/campaigns/{campaign_id}?ref={quote(code, safe='')}"


def share_link(code: str) -> str:
    return f"{APP_URL}/c/{quote(code, safe='')}"


def record_click(
    db: Session,
    code: str,
    ip_address: Optional[str],
    user_agent: Optional[str],
    referrer: Optional[str],
) -> str:
    """Log one click and bump the chainer's counter; returns the redirect target."""
    ref = resolve(db, code)
    db.add(LinkClick(
        chainer_id=ref.chainer_id,
        ip_address=(ip_address or "")[:45] or None,
        user_agent=(user_agent or "")[:512] or None,
        referrer=(referrer or "")[:2048] or None,
    ))
    db.flush()
    increment(db, Chainer, ref.chainer_id, clicks=1)
    db.commit()
    return campaign_redirect_path(ref.campaign_id, ref.referral_code)


def generate_referral_code(length: int = REFERRAL_CODE_LENGTH) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def validate_destination(db: Session, campaign_id: str, destination: str, charity_choice_id: Optional[str]) -> None:
    if destination not in DESTINATIONS:
        raise InvalidDestination(f"Unknown commission destination {destination!r}")
    if destination == "donate_other":
        if not charity_choice_id:
            raise InvalidDestination("donate_other requires charity_choice_id")
        if charity_choice_id == campaign_id:
            raise InvalidDestination("donate_other must target a different campaign; use donate_back")
        if not db.query(Campaign.id).filter(Campaign.id == charity_choice_id).first():
            raise InvalidDestination(f"Destination campaign {charity_choice_id} does not exist")
    elif charity_choice_id:
        raise InvalidDestination("charity_choice_id is only valid with donate_other")


def enroll_chainer(
    db: Session,
    user_id: str,
    campaign_id: str,
    destination: str = "keep",
    charity_choice_id: Optional[str] = None,
) -> tuple[Chainer, bool]:
    """Create the (user, campaign) chainer, or return the existing one.

    Returns (chainer, created).
    """
    campaign = db.query(Campaign).filter(Campaign.id == campaign_id).first()
    if not campaign:
        raise NotFound(f"Campaign {campaign_id} not found")

    existing = db.query(Chainer).filter(Chainer.user_id == user_id, Chainer.campaign_id == campaign_id).first()
    if existing:
        return existing, False

    validate_destination(db, campaign_id, destination, charity_choice_id)

    for attempt in range(_MAX_CODE_ATTEMPTS):
        chainer = Chainer(
            user_id=user_id,
            campaign_id=campaign_id,
            referral_code=generate_referral_code(),
            commission_destination=destination,
            charity_choice_id=charity_choice_id if destination == "donate_other" else None,
        )
        if insert_if_absent(db, chainer):
            db.commit()
            db.refresh(chainer)
            logger.info(f"[referrals.enroll] chainer={chainer.id} user={user_id} campaign={campaign_id} code={chainer.referral_code}")
            return chainer, True
        # Either the code collided or a concurrent enrolment won the (user, campaign) slot
        db.rollback()
        raced = db.query(Chainer).filter(Chainer.user_id == user_id, Chainer.campaign_id == campaign_id).first()
        if raced:
            return raced, False
        logger.warning(f"[referrals.enroll] referral code collision attempt={attempt + 1}")
    raise RuntimeError("could not allocate a unique referral code")


def change_destination(db: Session, chainer_id: str, destination: str, charity_choice_id: Optional[str] = None) -> Chainer:
    chainer = db.query(Chainer).filter(Chainer.id == chainer_id).first()
    if not chainer:
        raise NotFound(f"Chainer {chainer_id} not found")
    validate_destination(db, chainer.campaign_id, destination, charity_choice_id)
    chainer.commission_destination = destination
    chainer.charity_choice_id = charity_choice_id if destination == "donate_other" else None
    db.commit()
    db.refresh(chainer)
    logger.info(f"[referrals.destination] chainer={chainer_id} destination={destination}")
    return chainer


def chainer_stats(db: Session, chainer_id: str) -> dict:
    chainer = db.query(Chainer).filter(Chainer.id == chainer_id).first()
    if not chainer:
        raise NotFound(f"Chainer {chainer_id} not found")
    rows = (
        db.query(CommissionPayout.status, func.count(CommissionPayout.id), func.coalesce(func.sum(CommissionPayout.amount), 0))
        .filter(CommissionPayout.chainer_id == chainer_id)
        .group_by(CommissionPayout.status)
        .all()
    )
    payouts = {status: {"count": int(count), "amount": as_money(total)} for status, count, total in rows}
    return {
        "id": chainer.id,
        "user_id": chainer.user_id,
        "campaign_id": chainer.campaign_id,
        "referral_code": chainer.referral_code,
        "share_link": share_link(chainer.referral_code),
        "commission_destination": chainer.commission_destination,
        "charity_choice_id": chainer.charity_choice_id,
        "clicks": int(chainer.clicks or 0),
        "total_referrals": int(chainer.total_referrals or 0),
        "conversions": int(chainer.conversions or 0),
        "total_raised": as_money(chainer.total_raised),
        "commission_earned": as_money(chainer.commission_earned),
        "commission_paid": bool(chainer.commission_paid),
        "payouts": payouts,
    }
