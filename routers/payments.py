import json
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session
from standardwebhooks import WebhookVerificationError

from core.config import logger, APP_URL
from core.database import get_db
from core.errors import VerificationFailed, error_response
from models.donations import Donation
from utils.paystack import verify_webhook_signature
from utils.reconciliation import reconcile

router = APIRouter(prefix="/api/payments", tags=["payments"])


def _success_url(campaign_id: str, donation_id: str, status: str = "success") -> str:
    return f"{APP_URL}/campaign/{campaign_id}?" + urlencode({"donation_status": status, "donation_id": donation_id})


def _failure_url(error: str) -> str:
    return f"{APP_URL}/campaigns?" + urlencode({"donation_status": "failed", "error": error})


@router.get("/paystack/callback")
async def paystack_callback(request: Request, db: Session = Depends(get_db)):
    """
    Browser return URL after checkout.
    Always answers with a redirect; the result page polls /api/donations/status
    when the payment is still pending.
    """
    reference = (request.query_params.get("reference") or request.query_params.get("trxref") or "").strip()
    if not reference:
        return RedirectResponse(url=_failure_url("missing_reference"), status_code=302)

    try:
        result = await reconcile(db, reference)
    except VerificationFailed as ex:
        logger.warning(f"[payments.callback] reference={reference} {ex.code} retryable={ex.retryable}: {ex.message}")
        if ex.retryable:
            donation = db.query(Donation).filter(Donation.payment_intent_id == reference).first()
            if donation and donation.payment_status == "pending":
                # Webhook or the pending sweep settles it; the result page polls meanwhile
                return RedirectResponse(url=_success_url(donation.campaign_id, donation.id, "pending"), status_code=302)
        return RedirectResponse(url=_failure_url("verification_failed"), status_code=302)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[payments.callback] reference={reference} unexpected error: {ex}")
        return RedirectResponse(url=_failure_url("processing_error"), status_code=302)

    donation = result.donation or {}
    status = donation.get("payment_status")
    logger.info(f"[payments.callback] reference={reference} outcome={result.outcome} status={status or '-'}")
    if status == "completed":
        return RedirectResponse(url=_success_url(donation["campaign_id"], donation["id"]), status_code=302)
    if status == "pending":
        return RedirectResponse(url=_success_url(donation["campaign_id"], donation["id"], "pending"), status_code=302)
    if result.outcome == "not_found":
        return RedirectResponse(url=_failure_url("donation_not_found"), status_code=302)
    return RedirectResponse(url=_failure_url("payment_failed"), status_code=302)


def _event_donation_id(data: dict) -> Optional[str]:
    meta = data.get("metadata") or {}
    if isinstance(meta, str):
        try:
            meta = json.loads(meta)
        except ValueError:
            meta = {}
    if not isinstance(meta, dict):
        return None
    value = meta.get("donationId") or meta.get("donation_id")
    return str(value) if value else None


@router.post("/paystack/webhook")
async def paystack_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Provider push. The payload only says which donation to look at; its
    status is re-verified with Paystack before anything is written.
    Settled, duplicate and unknown events are acknowledged with 200.
    """
    raw_body = await request.body()
    try:
        payload = verify_webhook_signature(raw_body, request.headers)
    except WebhookVerificationError as ex:
        logger.warning(f"[payments.webhook] invalid signature: {ex}")
        return JSONResponse({"success": False, "error": "invalid_signature"}, status_code=401)

    if payload is None:
        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError as ex:
            logger.warning(f"[payments.webhook] invalid JSON: {ex}")
            return JSONResponse({"success": False, "error": "invalid_json"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"success": False, "error": "invalid_payload"}, status_code=400)

    event = str(payload.get("event") or payload.get("type") or "").strip().lower()
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        data = {}

    if event.startswith("transfer."):
        logger.info(f"[payments.webhook] {event} reference={data.get('reference') or '-'} acknowledged")
        return {"success": True, "outcome": "acknowledged", "event": event}
    if event not in ("charge.success", "charge.failed"):
        logger.info(f"[payments.webhook] ignoring event={event or '-'}")
        return {"success": True, "outcome": "ignored", "event": event}

    reference = str(data.get("reference") or "").strip() or None
    donation_id = _event_donation_id(data)
    if not reference and not donation_id:
        return JSONResponse({"success": False, "error": "reference_required"}, status_code=400)

    logger.info(f"[payments.webhook] event={event} reference={reference or '-'} donation={donation_id or '-'}")
    try:
        result = await reconcile(db, reference, donation_id=donation_id)
    except VerificationFailed as ex:
        logger.warning(f"[payments.webhook] reference={reference} {ex.code} retryable={ex.retryable}: {ex.message}")
        return error_response(ex)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[payments.webhook] reference={reference} unexpected error: {ex}")
        return JSONResponse({"success": False, "error": "internal_error"}, status_code=500)

    return {
        "success": True,
        "event": event,
        "outcome": result.outcome,
        "donation": result.donation,
        "payout": result.payout,
        "notes": result.notes,
    }
