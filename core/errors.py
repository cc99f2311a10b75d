"""
Error taxonomy for attribution, reconciliation and payouts.

Every class carries a stable ``code`` used in JSON error bodies so
operators can grep logs and webhook responses for the same token.
"""
from typing import Optional


class ChainfundError(Exception):
    code = "error"
    status_code = 500

    def __init__(self, message: str = "", *, detail: Optional[dict] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.code, "message": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


class InvalidReferralCode(ChainfundError):
    code = "invalid_referral_code"
    status_code = 404


class NotFound(ChainfundError):
    code = "not_found"
    status_code = 404


class VerificationFailed(ChainfundError):
    code = "verification_failed"
    status_code = 503

    def __init__(self, message: str = "", *, retryable: bool = True, detail: Optional[dict] = None):
        super().__init__(message, detail=detail)
        self.retryable = retryable
        if not retryable:
            self.status_code = 422

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retryable"] = self.retryable
        return body


class DuplicateEvent(ChainfundError):
    """Not a failure: the event was already applied."""
    code = "duplicate_event"
    status_code = 200


class InvalidDestination(ChainfundError):
    code = "invalid_destination"
    status_code = 422


class DisbursementFailed(ChainfundError):
    code = "disbursement_failed"
    status_code = 502

    def __init__(self, message: str = "", *, timed_out: bool = False, detail: Optional[dict] = None):
        super().__init__(message, detail=detail)
        self.timed_out = timed_out


class StorageConflict(ChainfundError):
    """A conditional update lost the race; the winner already applied effects."""
    code = "storage_conflict"
    status_code = 200


class InvalidDonation(ChainfundError):
    code = "invalid_donation"
    status_code = 400


class InvalidPayoutState(ChainfundError):
    code = "invalid_payout_state"
    status_code = 409


def error_response(ex: ChainfundError):
    from fastapi.responses import JSONResponse

    return JSONResponse(ex.to_dict(), status_code=ex.status_code)
