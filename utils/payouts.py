"""
Commission payout batches.

A run selects pending keep payouts whose chainer has an eligible payout
account, claims them (pending -> processing) with one conditional update
per row, and only then calls the transfer API. Claimed rows end in
completed or failed; a timed-out transfer stays in processing because its
outcome is unknown. Nothing is retried automatically; see requeue().
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from core.config import logger, PAYOUT_BATCH_SIZE
from core.errors import DisbursementFailed, InvalidPayoutState, NotFound
from models.chainers import Chainer
from models.payouts import CommissionPayout, PayoutAccount
from utils import paystack
from utils.ledger import as_money, compare_and_set, increment, utcnow

Disburser = Callable[..., Awaitable[paystack.TransferResult]]


@dataclass(frozen=True)
class _Claimed:
    id: str
    chainer_id: str
    amount: Decimal
    currency: str
    recipient_code: str


def account_is_eligible(account: Optional[PayoutAccount]) -> bool:
    return bool(
        account
        and account.is_verified
        and not account.is_locked
        and not account.change_requested
        and account.recipient_code
    )


def _note(line: str):
    stamp = utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")
    entry = f"[{stamp}] {line}\n"
    return func.coalesce(CommissionPayout.notes, "") + entry


def select_eligible(db: Session, max_items: int) -> List[str]:
    rows = (
        db.query(CommissionPayout.id)
        .join(Chainer, Chainer.id == CommissionPayout.chainer_id)
        .join(PayoutAccount, PayoutAccount.user_id == Chainer.user_id)
        .filter(
            CommissionPayout.status == "pending",
            CommissionPayout.destination == "keep",
            PayoutAccount.is_verified.is_(True),
            PayoutAccount.is_locked.is_(False),
            PayoutAccount.change_requested.is_(False),
            PayoutAccount.recipient_code.isnot(None),
            PayoutAccount.recipient_code != "",
        )
        .order_by(CommissionPayout.created_at.asc(), CommissionPayout.id.asc())
        .limit(max_items)
        .all()
    )
    return [r[0] for r in rows]


def claim(db: Session, payout_ids: List[str]) -> List[str]:
    """pending -> processing, row by row. Returns the ids this caller won."""
    won = [
        pid for pid in payout_ids
        if compare_and_set(db, CommissionPayout, pid, "status", "pending", "processing", claimed_at=utcnow())
    ]
    db.commit()
    return won


def _load_claimed(db: Session, payout_id: str) -> Optional[_Claimed]:
    row = (
        db.query(CommissionPayout, PayoutAccount)
        .join(Chainer, Chainer.id == CommissionPayout.chainer_id)
        .join(PayoutAccount, PayoutAccount.user_id == Chainer.user_id)
        .filter(CommissionPayout.id == payout_id)
        .first()
    )
    if not row:
        return None
    payout, account = row
    return _Claimed(
        id=payout.id,
        chainer_id=payout.chainer_id,
        amount=Decimal(str(payout.amount)),
        currency=payout.currency,
        recipient_code=(account.recipient_code or "") if account_is_eligible(account) else "",
    )


def _mark_completed(db: Session, item: _Claimed, transaction_id: str) -> bool:
    won = compare_and_set(
        db, CommissionPayout, item.id, "status", "processing", "completed",
        transaction_id=transaction_id,
        processed_at=utcnow(),
    )
    if won:
        increment(db, Chainer, item.chainer_id, commission_earned=-item.amount)
        db.execute(
            update(Chainer)
            .where(Chainer.id == item.chainer_id)
            .values(commission_paid=True)
            .execution_options(synchronize_session=False)
        )
    db.commit()
    return won


def _mark_failed(db: Session, item: _Claimed, reason: str) -> bool:
    won = compare_and_set(
        db, CommissionPayout, item.id, "status", "processing", "failed",
        notes=_note(f"disbursement failed: {reason}"),
        processed_at=utcnow(),
    )
    db.commit()
    return won


def _mark_unknown(db: Session, item: _Claimed, reason: str) -> None:
    db.execute(
        update(CommissionPayout)
        .where(CommissionPayout.id == item.id, CommissionPayout.status == "processing")
        .values(notes=_note(f"outcome unknown, left processing: {reason}"))
        .execution_options(synchronize_session=False)
    )
    db.commit()


async def run_batch(db: Session, max_items: int = PAYOUT_BATCH_SIZE, disburse: Optional[Disburser] = None) -> dict:
    transfer = disburse or paystack.initiate_transfer
    limit = max(0, int(max_items))
    candidates = select_eligible(db, limit) if limit else []
    db.rollback()
    claimed = claim(db, candidates) if candidates else []
    logger.info(f"[payouts.batch] candidates={len(candidates)} claimed={len(claimed)}")

    completed = failed = 0
    results = []
    for pid in claimed:
        item = _load_claimed(db, pid)
        db.rollback()
        if item is None:
            continue
        entry = {"id": item.id, "chainer_id": item.chainer_id, "amount": as_money(item.amount), "currency": item.currency}
        if not item.recipient_code:
            _mark_failed(db, item, "payout account no longer eligible")
            failed += 1
            entry.update(status="failed", error="account_ineligible")
            results.append(entry)
            continue
        try:
            transfer_result = await transfer(
                item.amount,
                item.recipient_code,
                f"commission_{item.id}",
                f"Chainer commission {item.id}",
            )
        except DisbursementFailed as ex:
            if ex.timed_out:
                _mark_unknown(db, item, ex.message)
                entry.update(status="processing", error=ex.message)
                logger.warning(f"[payouts.batch] payout={item.id} timed out, left processing")
            else:
                _mark_failed(db, item, ex.message)
                failed += 1
                entry.update(status="failed", error=ex.message)
                logger.warning(f"[payouts.batch] payout={item.id} failed: {ex.message}")
            results.append(entry)
            continue
        except Exception as ex:
            logger.exception(f"[payouts.batch] payout={item.id} unexpected disbursement error: {ex}")
            _mark_unknown(db, item, type(ex).__name__)
            entry.update(status="processing", error="unexpected_error")
            results.append(entry)
            continue

        _mark_completed(db, item, transfer_result.transfer_code)
        completed += 1
        entry.update(status="completed", transaction_id=transfer_result.transfer_code)
        results.append(entry)
        logger.info(f"[payouts.batch] payout={item.id} completed transfer={transfer_result.transfer_code}")

    return {"claimed": len(claimed), "completed": completed, "failed": failed, "results": results}


def requeue(db: Session, payout_id: str, reason: str = "") -> CommissionPayout:
    """Operator action: failed (or stuck processing) -> pending."""
    line = "requeued by operator" + (f": {reason}" if reason else "")
    won = compare_and_set(
        db, CommissionPayout, payout_id, "status", ("failed", "processing"), "pending",
        claimed_at=None,
        processed_at=None,
        notes=_note(line),
    )
    if not won:
        db.rollback()
        payout = db.query(CommissionPayout).filter(CommissionPayout.id == payout_id).first()
        if not payout:
            raise NotFound(f"Payout {payout_id} not found")
        raise InvalidPayoutState(f"Payout {payout_id} is {payout.status}; only failed or processing payouts can be requeued")
    db.commit()
    payout = db.query(CommissionPayout).filter(CommissionPayout.id == payout_id).first()
    logger.info(f"[payouts.requeue] payout={payout_id}")
    return payout
