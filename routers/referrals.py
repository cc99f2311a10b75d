from typing import Optional

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.auth import get_uid_from_request, client_ip, require_admin
from core.config import logger
from core.database import get_db
from core.errors import ChainfundError, InvalidReferralCode, NotFound, error_response
from models.chainers import Chainer
from utils.rate_limit import allow_click
from utils.referrals import (
    campaign_redirect_path,
    change_destination,
    chainer_stats,
    enroll_chainer,
    record_click,
    resolve,
    share_link,
)

router = APIRouter(tags=["referrals"])


# --- Models ---

class EnrollChainerPayload(BaseModel):
    campaign_id: str
    user_id: Optional[str] = None  # only honoured when no bearer identity is present
    commission_destination: str = "keep"
    charity_choice_id: Optional[str] = None


class DestinationPayload(BaseModel):
    commission_destination: str
    charity_choice_id: Optional[str] = None
    user_id: Optional[str] = None  # only honoured when no bearer identity is present


def _chainer_out(chainer) -> dict:
    return {
        "id": chainer.id,
        "user_id": chainer.user_id,
        "campaign_id": chainer.campaign_id,
        "referral_code": chainer.referral_code,
        "share_link": share_link(chainer.referral_code),
        "commission_destination": chainer.commission_destination,
        "charity_choice_id": chainer.charity_choice_id,
        "is_active": bool(chainer.is_active),
    }


# --- Public link ---

@router.get("/c/{referral_code}")
async def referral_redirect(referral_code: str, request: Request, db: Session = Depends(get_db)):
    """Count the click and send the visitor to the campaign page with ?ref= attached."""
    ip = client_ip(request)
    try:
        ref = resolve(db, referral_code)
    except InvalidReferralCode as ex:
        logger.info(f"[referrals.click] unknown code={referral_code!r} ip={ip}")
        return error_response(ex)

    target = campaign_redirect_path(ref.campaign_id, ref.referral_code)
    if not allow_click(ip):
        logger.info(f"[referrals.click] rate-limited ip={ip} chainer={ref.chainer_id}; not recorded")
        return RedirectResponse(url=target, status_code=302)

    try:
        target = record_click(
            db,
            referral_code,
            ip,
            request.headers.get("user-agent"),
            request.headers.get("referer"),
        )
        logger.info(f"[referrals.click] chainer={ref.chainer_id} campaign={ref.campaign_id} ip={ip}")
    except SQLAlchemyError as ex:
        db.rollback()
        logger.exception(f"[referrals.click] failed to record click chainer={ref.chainer_id}: {ex}")
    return RedirectResponse(url=target, status_code=302)


# --- Chainers ---

@router.post("/api/chainers")
async def chainers_enroll(request: Request, payload: EnrollChainerPayload, db: Session = Depends(get_db)):
    uid = get_uid_from_request(request) or (payload.user_id or "").strip()
    if not uid:
        return JSONResponse({"success": False, "error": "unauthorized"}, status_code=401)
    try:
        chainer, created = enroll_chainer(
            db,
            uid,
            payload.campaign_id,
            payload.commission_destination,
            payload.charity_choice_id,
        )
    except ChainfundError as ex:
        db.rollback()
        logger.info(f"[referrals.enroll] rejected user={uid} campaign={payload.campaign_id}: {ex.code}")
        return error_response(ex)
    return JSONResponse({"success": True, "created": created, "data": _chainer_out(chainer)}, status_code=201 if created else 200)


def _authorize_chainer(request: Request, db: Session, chainer_id: str, claimed_uid: Optional[str]) -> Optional[JSONResponse]:
    """Only the chainer's own user, or an operator holding the admin secret, may act on a chainer."""
    if request.headers.get("X-Admin-Secret") and require_admin(request) is None:
        return None
    uid = get_uid_from_request(request) or (claimed_uid or "").strip()
    if not uid:
        return JSONResponse({"success": False, "error": "unauthorized"}, status_code=401)
    owner = db.query(Chainer.user_id).filter(Chainer.id == chainer_id).scalar()
    if owner is None:
        return error_response(NotFound(f"Chainer {chainer_id} not found"))
    if owner != uid:
        logger.warning(f"[referrals.auth] user={uid} denied on chainer={chainer_id}")
        return JSONResponse({"success": False, "error": "forbidden"}, status_code=403)
    return None


@router.patch("/api/chainers/{chainer_id}/destination")
async def chainers_destination(chainer_id: str, request: Request, payload: DestinationPayload, db: Session = Depends(get_db)):
    sec = _authorize_chainer(request, db, chainer_id, payload.user_id)
    if sec is not None:
        return sec
    try:
        chainer = change_destination(db, chainer_id, payload.commission_destination, payload.charity_choice_id)
    except ChainfundError as ex:
        db.rollback()
        return error_response(ex)
    return {"success": True, "data": _chainer_out(chainer)}


@router.get("/api/chainers/{chainer_id}")
async def chainers_stats(chainer_id: str, request: Request, user_id: Optional[str] = None, db: Session = Depends(get_db)):
    sec = _authorize_chainer(request, db, chainer_id, user_id)
    if sec is not None:
        return sec
    try:
        return {"success": True, "data": chainer_stats(db, chainer_id)}
    except ChainfundError as ex:
        return error_response(ex)
