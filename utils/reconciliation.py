"""
Payment reconciliation: drives donations through pending -> completed | failed.

A webhook or callback is only a hint that something changed. The status is
always re-read from the provider, and the transition is a single
conditional UPDATE so redelivered or concurrent events settle exactly once.
No database transaction is held open across the provider call.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import logger
from core.errors import DuplicateEvent, InvalidDestination, NotFound, StorageConflict, VerificationFailed
from models.campaigns import Campaign
from models.chainers import Chainer
from models.donations import Donation
from utils import commission, paystack
from utils.attribution import donation_to_dict
from utils.ledger import compare_and_set, credit_campaign, increment, mark_referral_converted, utcnow

TERMINAL_STATUSES = ("completed", "failed")

Verifier = Callable[[str], Awaitable[paystack.VerificationResult]]


@dataclass
class ReconcileResult:
    outcome: str  # completed, failed, pending, duplicate, not_found
    reference: Optional[str] = None
    donation: Optional[dict] = None
    payout: Optional[dict] = None
    notes: list = field(default_factory=list)

    @property
    def donation_id(self) -> Optional[str]:
        return (self.donation or {}).get("id")

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "reference": self.reference,
            "donation": self.donation,
            "payout": self.payout,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class _Snapshot:
    id: str
    reference: str
    campaign_id: str
    donor_id: str
    chainer_id: Optional[str]
    amount: Decimal
    currency: str


def _find_donation(db: Session, reference: Optional[str], donation_id: Optional[str]) -> Optional[Donation]:
    donation = None
    if reference:
        donation = db.query(Donation).filter(Donation.payment_intent_id == reference).first()
    if donation is None and donation_id:
        donation = db.query(Donation).filter(Donation.id == donation_id).first()
    return donation


def _current(db: Session, donation_id: str) -> Optional[dict]:
    d = db.query(Donation).filter(Donation.id == donation_id).first()
    return donation_to_dict(d) if d else None


def _check_amount(snap: _Snapshot, verified: paystack.VerificationResult) -> None:
    expected_minor = paystack.to_minor_units(snap.amount)
    currency_ok = (verified.currency or "").upper() == snap.currency.upper()
    if verified.amount_minor != expected_minor or not currency_ok:
        raise VerificationFailed(
            "Verified payment does not match the donation",
            retryable=False,
            detail={
                "reference": snap.reference,
                "expected": f"{expected_minor} {snap.currency}",
                "verified": f"{verified.amount_minor} {verified.currency}",
            },
        )


def _note_provider_error(db: Session, snap: _Snapshot, message: str) -> None:
    db.execute(
        update(Donation)
        .where(Donation.id == snap.id, Donation.payment_status == "pending")
        .values(provider_error=message[:1000])
        .execution_options(synchronize_session=False)
    )
    db.commit()


def _apply_completion(db: Session, snap: _Snapshot, result: ReconcileResult) -> None:
    """Effects owed by the one delivery that won the pending -> completed update."""
    credit_campaign(db, snap.campaign_id, snap.amount)
    if not snap.chainer_id:
        return

    if mark_referral_converted(db, snap.chainer_id, snap.donor_id, snap.campaign_id):
        increment(db, Chainer, snap.chainer_id, conversions=1)
    increment(db, Chainer, snap.chainer_id, total_raised=snap.amount)

    chainer = db.query(Chainer).filter(Chainer.id == snap.chainer_id).first()
    campaign = db.query(Campaign).filter(Campaign.id == snap.campaign_id).first()
    if not chainer or not campaign:
        logger.error(f"[payments.reconcile] donation={snap.id} chainer or campaign vanished, commission skipped")
        result.notes.append("commission_skipped")
        return
    try:
        with db.begin_nested():
            payout = commission.settle(
                db,
                donation_id=snap.id,
                campaign_id=snap.campaign_id,
                amount=snap.amount,
                currency=snap.currency,
                rate_percent=campaign.chainer_commission_rate,
                chainer=chainer,
            )
    except InvalidDestination as ex:
        logger.error(f"[payments.reconcile] donation={snap.id} {ex.code}: {ex.message}; commission skipped")
        result.notes.append(ex.code)
        return
    if payout is not None:
        result.payout = commission.payout_to_dict(payout)


async def _settle_once(
    db: Session,
    reference: Optional[str],
    donation_id: Optional[str],
    verifier: Verifier,
) -> ReconcileResult:
    donation = _find_donation(db, reference, donation_id)
    if donation is None:
        raise NotFound(f"No donation for reference={reference} donation_id={donation_id}")
    if donation.payment_status in TERMINAL_STATUSES:
        raise DuplicateEvent(f"Donation {donation.id} already {donation.payment_status}", detail={"id": donation.id})

    snap = _Snapshot(
        id=donation.id,
        reference=donation.payment_intent_id or reference or "",
        campaign_id=donation.campaign_id,
        donor_id=donation.donor_id,
        chainer_id=donation.chainer_id,
        amount=Decimal(str(donation.amount)),
        currency=donation.currency,
    )
    db.rollback()

    verified = await verifier(snap.reference)

    if verified.succeeded:
        try:
            _check_amount(snap, verified)
        except VerificationFailed as ex:
            _note_provider_error(db, snap, ex.message)
            raise
        new_status = "completed"
    elif verified.settled_failed:
        new_status = "failed"
    else:
        logger.info(f"[payments.reconcile] donation={snap.id} provider status={verified.status}, leaving pending")
        return ReconcileResult(outcome="pending", reference=snap.reference, donation=_current(db, snap.id))

    won = compare_and_set(
        db, Donation, snap.id, "payment_status", "pending", new_status,
        processed_at=utcnow(),
        provider_status=verified.status,
        provider_error=None if new_status == "completed" else (verified.gateway_response or verified.status),
    )
    if not won:
        db.rollback()
        raise StorageConflict(f"Donation {snap.id} settled by a concurrent delivery", detail={"id": snap.id})

    result = ReconcileResult(outcome=new_status, reference=snap.reference)
    if new_status == "completed":
        _apply_completion(db, snap, result)
    db.commit()
    result.donation = _current(db, snap.id)
    logger.info(
        f"[payments.reconcile] donation={snap.id} reference={snap.reference} -> {new_status} "
        f"chainer={snap.chainer_id or '-'} payout={(result.payout or {}).get('id', '-')}"
    )
    return result


async def reconcile(
    db: Session,
    reference: Optional[str],
    *,
    donation_id: Optional[str] = None,
    verifier: Optional[Verifier] = None,
) -> ReconcileResult:
    """Reconcile one provider event. Safe to call any number of times.

    Returns an outcome for everything that is not worth retrying; raises
    VerificationFailed when the provider could not confirm the payment.
    """
    verify = verifier or paystack.verify_transaction
    try:
        return await _settle_once(db, reference, donation_id, verify)
    except NotFound as ex:
        db.rollback()
        logger.info(f"[payments.reconcile] {ex.code}: {ex.message}")
        return ReconcileResult(outcome="not_found", reference=reference)
    except (DuplicateEvent, StorageConflict) as ex:
        db.rollback()
        logger.info(f"[payments.reconcile] {ex.code}: {ex.message}")
        return ReconcileResult(outcome="duplicate", reference=reference, donation=_current(db, ex.detail.get("id")))


async def sweep_pending(
    db: Session,
    older_than: timedelta = timedelta(minutes=5),
    limit: int = 50,
    *,
    verifier: Optional[Verifier] = None,
) -> dict:
    """Re-verify card donations stuck in pending whose webhook never arrived.

    Each donation goes through reconcile(), so a sweep racing a late webhook
    or another sweep still settles it once.
    """
    cutoff = utcnow() - older_than
    stale = (
        db.query(Donation.id, Donation.payment_intent_id)
        .filter(
            Donation.payment_status == "pending",
            Donation.payment_method != "commission",
            Donation.created_at < cutoff,
        )
        .order_by(Donation.created_at)
        .limit(limit)
        .all()
    )
    db.rollback()

    summary = {"checked": 0, "completed": 0, "failed": 0, "still_pending": 0, "skipped": 0, "results": []}
    for donation_id, reference in stale:
        summary["checked"] += 1
        try:
            result = await reconcile(db, reference, donation_id=donation_id, verifier=verifier)
        except VerificationFailed as ex:
            logger.warning(f"[payments.sweep] donation={donation_id} {ex.code} retryable={ex.retryable}: {ex.message}")
            summary["still_pending"] += 1
            summary["results"].append({"donation_id": donation_id, "outcome": "verification_failed", "error": ex.message})
            continue
        if result.outcome in ("completed", "failed"):
            summary[result.outcome] += 1
        elif result.outcome == "pending":
            summary["still_pending"] += 1
        else:
            summary["skipped"] += 1
        summary["results"].append({"donation_id": donation_id, "outcome": result.outcome})
    logger.info(
        f"[payments.sweep] checked={summary['checked']} completed={summary['completed']} "
        f"failed={summary['failed']} still_pending={summary['still_pending']}"
    )
    return summary
