from typing import Any, Optional

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import get_uid_from_request
from core.config import logger
from core.database import get_db
from core.errors import ChainfundError, NotFound, error_response
from models.donations import Donation
from utils.attribution import create_donation, donation_to_dict

router = APIRouter(prefix="/api/donations", tags=["donations"])


# --- Models ---

class DonationPayload(BaseModel):
    campaign_id: str
    amount: Any
    currency: str
    donor_id: Optional[str] = None
    payment_method: str = "paystack"
    ref: Optional[str] = None
    message: Optional[str] = None
    is_anonymous: bool = False


@router.post("")
async def donations_create(request: Request, payload: DonationPayload, db: Session = Depends(get_db)):
    donor = get_uid_from_request(request) or (payload.donor_id or "").strip()
    if not donor:
        return JSONResponse({"success": False, "error": "unauthorized", "message": "Donor identity required"}, status_code=401)
    try:
        donation, attribution = create_donation(
            db,
            campaign_id=payload.campaign_id,
            donor_id=donor,
            amount=payload.amount,
            currency=payload.currency,
            payment_method=payload.payment_method,
            message=payload.message,
            is_anonymous=payload.is_anonymous,
            referral_code=payload.ref,
        )
    except ChainfundError as ex:
        db.rollback()
        logger.info(f"[donations.create] rejected campaign={payload.campaign_id} donor={donor}: {ex.code} {ex.message}")
        return error_response(ex)
    return JSONResponse(
        {"success": True, "data": donation_to_dict(donation), "attribution": attribution.to_dict()},
        status_code=201,
    )


@router.get("/status")
async def donations_status(reference: str = "", db: Session = Depends(get_db)):
    ref = (reference or "").strip()
    if not ref:
        return JSONResponse({"success": False, "error": "reference_required"}, status_code=400)
    donation = db.query(Donation).filter(Donation.payment_intent_id == ref).first()
    if not donation:
        return error_response(NotFound(f"No donation for reference {ref}"))
    return {"success": True, "data": donation_to_dict(donation)}
