"""
Narrow write primitives for the ledger tables.

Counters and statuses are never read, modified in Python and written
back. Every mutation here is a single statement whose WHERE clause
carries the precondition, so concurrent callers serialize inside the
database and the loser simply sees rowcount == 0.

None of these helpers commit; the caller owns the transaction.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import logger
from models.campaigns import Campaign
from models.chainers import Referral


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def insert_if_absent(db: Session, row: Any) -> bool:
    """Insert `row`, returning False when a unique index already holds it."""
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
        return True
    except IntegrityError as ex:
        logger.info(f"[ledger.insert] duplicate {type(row).__name__}: {ex.orig}")
        return False


def increment(db: Session, model, row_id: str, **deltas) -> bool:
    """Atomically add `deltas` to numeric columns of one row."""
    values = {getattr(model, col): getattr(model, col) + delta for col, delta in deltas.items()}
    res = db.execute(
        update(model)
        .where(model.id == row_id)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def compare_and_set(
    db: Session,
    model,
    row_id: str,
    column: str,
    expected: Union[str, Iterable[str]],
    new: str,
    **extra,
) -> bool:
    """UPDATE ... SET column=new WHERE id=row_id AND column=expected.

    Returns True only for the caller whose update actually matched.
    """
    col = getattr(model, column)
    if isinstance(expected, str):
        guard = col == expected
    else:
        guard = col.in_(tuple(expected))
    values = {column: new}
    values.update(extra)
    res = db.execute(
        update(model)
        .where(model.id == row_id, guard)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def mark_referral_converted(db: Session, referrer_id: str, referred_id: str, campaign_id: str) -> bool:
    """Flip is_converted false -> true; a converted referral is never touched again."""
    res = db.execute(
        update(Referral)
        .where(
            Referral.referrer_id == referrer_id,
            Referral.referred_id == referred_id,
            Referral.campaign_id == campaign_id,
            Referral.is_converted.is_(False),
        )
        .values(is_converted=True, converted_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def credit_campaign(db: Session, campaign_id: str, amount) -> bool:
    """Add `amount` to a campaign's raised total and flip it to goal_reached once it meets the goal."""
    if not increment(db, Campaign, campaign_id, current_amount=amount):
        return False
    db.execute(
        update(Campaign)
        .where(
            Campaign.id == campaign_id,
            Campaign.status == "active",
            Campaign.current_amount >= Campaign.goal_amount,
        )
        .values(status="goal_reached")
        .execution_options(synchronize_session=False)
    )
    return True


def as_money(value) -> str:
    """Render a stored amount with exactly two decimals."""
    return str(Decimal(str(value if value is not None else 0)).quantize(Decimal("0.01")))
