from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import require_admin, require_cron, client_ip
from core.config import logger, PAYOUT_BATCH_SIZE, PENDING_SWEEP_AGE_MIN, PENDING_SWEEP_BATCH_SIZE
from core.database import get_db
from core.errors import ChainfundError, error_response
from utils.commission import payout_to_dict
from utils.payouts import requeue, run_batch
from utils.rate_limit import allow_admin
from utils.reconciliation import sweep_pending

router = APIRouter(tags=["payouts"])

MAX_BATCH_LIMIT = 500


# --- Models ---

class BatchPayload(BaseModel):
    limit: Optional[int] = None


class RequeuePayload(BaseModel):
    reason: Optional[str] = None


class SweepPayload(BaseModel):
    older_than_minutes: Optional[int] = None
    limit: Optional[int] = None


@router.post("/api/cron/payouts")
async def cron_payouts(request: Request, payload: Optional[BatchPayload] = None, db: Session = Depends(get_db)):
    """Scheduler-triggered payout batch (Authorization: Bearer CRON_SECRET)."""
    sec = require_cron(request)
    if sec is not None:
        return sec
    lim = (payload.limit if payload and payload.limit else None) or PAYOUT_BATCH_SIZE
    lim = max(1, min(int(lim), MAX_BATCH_LIMIT))
    try:
        summary = await run_batch(db, lim)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[payouts.cron] batch failed: {ex}")
        return JSONResponse({"success": False, "error": "batch_failed"}, status_code=500)
    logger.info(
        f"[payouts.cron] limit={lim} claimed={summary['claimed']} completed={summary['completed']} failed={summary['failed']}"
    )
    return {
        "success": True,
        "processed": summary["completed"],
        "failed": summary["failed"],
        "claimed": summary["claimed"],
        "results": summary["results"],
    }


@router.post("/api/cron/reconcile-pending")
async def cron_reconcile_pending(request: Request, payload: Optional[SweepPayload] = None, db: Session = Depends(get_db)):
    """Re-verify donations left pending by a lost webhook (Authorization: Bearer CRON_SECRET)."""
    sec = require_cron(request)
    if sec is not None:
        return sec
    minutes = payload.older_than_minutes if payload and payload.older_than_minutes is not None else PENDING_SWEEP_AGE_MIN
    minutes = max(0, int(minutes))
    lim = (payload.limit if payload and payload.limit else None) or PENDING_SWEEP_BATCH_SIZE
    lim = max(1, min(int(lim), MAX_BATCH_LIMIT))
    try:
        summary = await sweep_pending(db, timedelta(minutes=minutes), lim)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[payments.sweep] run failed: {ex}")
        return JSONResponse({"success": False, "error": "sweep_failed"}, status_code=500)
    return {"success": True, **summary}


@router.post("/api/admin/payouts/{payout_id}/requeue")
async def admin_requeue_payout(
    payout_id: str,
    request: Request,
    payload: Optional[RequeuePayload] = None,
    db: Session = Depends(get_db),
):
    if not allow_admin(client_ip(request)):
        return JSONResponse({"success": False, "error": "rate_limited"}, status_code=429)
    sec = require_admin(request)
    if sec is not None:
        return sec
    try:
        payout = requeue(db, payout_id, (payload.reason if payload else "") or "")
    except ChainfundError as ex:
        return error_response(ex)
    return {"success": True, "data": payout_to_dict(payout)}
