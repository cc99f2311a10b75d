"""
Paystack client: transaction verification, transfers and webhook signatures.

Every call carries PAYSTACK_TIMEOUT_SEC. Callers get typed failures:
VerificationFailed for verify, DisbursementFailed for transfers.
"""
import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx
from standardwebhooks import Webhook, WebhookVerificationError

from core.config import (
    logger,
    PAYSTACK_API_BASE,
    PAYSTACK_SECRET_KEY,
    PAYSTACK_TIMEOUT_SEC,
    PAYSTACK_WEBHOOK_SECRET,
)
from core.errors import DisbursementFailed, VerificationFailed


@dataclass(frozen=True)
class VerificationResult:
    status: str  # success, failed, abandoned, reversed, pending, ...
    reference: str
    amount_minor: Optional[int]
    currency: Optional[str]
    gateway_response: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def settled_failed(self) -> bool:
        return self.status in ("failed", "abandoned", "reversed")


@dataclass(frozen=True)
class TransferResult:
    transfer_code: str
    status: str
    reference: str


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {PAYSTACK_SECRET_KEY}",
        "Content-Type": "application/json",
        "Accept": "application/json",
        "User-Agent": "ChainfundCore/1.0",
    }


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


async def verify_transaction(reference: str) -> VerificationResult:
    """Ask Paystack for the authoritative status of `reference`."""
    if not PAYSTACK_SECRET_KEY:
        raise VerificationFailed("Payment provider is not configured")
    url = f"{PAYSTACK_API_BASE}/transaction/verify/{reference}"
    try:
        async with httpx.AsyncClient(timeout=PAYSTACK_TIMEOUT_SEC) as client:
            resp = await client.get(url, headers=_headers())
    except httpx.TimeoutException as ex:
        logger.warning(f"[paystack.verify] reference={reference} timed out: {ex}")
        raise VerificationFailed("Payment verification timed out", detail={"reference": reference})
    except httpx.HTTPError as ex:
        logger.warning(f"[paystack.verify] reference={reference} transport error: {ex}")
        raise VerificationFailed("Payment provider unreachable", detail={"reference": reference})

    if resp.status_code >= 500 or resp.status_code == 429:
        raise VerificationFailed(
            f"Payment provider returned {resp.status_code}",
            detail={"reference": reference, "status": resp.status_code},
        )
    try:
        body = resp.json()
    except ValueError:
        raise VerificationFailed("Payment provider returned invalid JSON", detail={"reference": reference})

    if resp.status_code != 200 or not body.get("status"):
        # Paystack answers 400/404 for references it has never seen
        raise VerificationFailed(
            str(body.get("message") or "Transaction could not be verified"),
            retryable=resp.status_code != 404,
            detail={"reference": reference, "status": resp.status_code},
        )

    data = body.get("data") or {}
    amount = data.get("amount")
    result = VerificationResult(
        status=str(data.get("status") or "").lower(),
        reference=str(data.get("reference") or reference),
        amount_minor=int(amount) if amount is not None else None,
        currency=(data.get("currency") or None),
        gateway_response=data.get("gateway_response"),
    )
    logger.info(f"[paystack.verify] reference={reference} status={result.status}")
    return result


async def initiate_transfer(amount, recipient_code: str, reference: str, reason: str = "") -> TransferResult:
    """Send `amount` (major units) to a transfer recipient."""
    if not PAYSTACK_SECRET_KEY:
        raise DisbursementFailed("Payment provider is not configured")
    payload: Dict[str, Any] = {
        "source": "balance",
        "amount": to_minor_units(amount),
        "recipient": recipient_code,
        "reference": reference,
        "reason": reason or "Chainer commission",
    }
    try:
        async with httpx.AsyncClient(timeout=PAYSTACK_TIMEOUT_SEC) as client:
            resp = await client.post(f"{PAYSTACK_API_BASE}/transfer", headers=_headers(), json=payload)
    except httpx.TimeoutException as ex:
        logger.warning(f"[paystack.transfer] reference={reference} timed out: {ex}")
        raise DisbursementFailed("Transfer request timed out", timed_out=True)
    except httpx.HTTPError as ex:
        logger.warning(f"[paystack.transfer] reference={reference} transport error: {ex}")
        raise DisbursementFailed(f"Transfer request failed: {type(ex).__name__}")

    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.status_code not in (200, 201) or not body.get("status"):
        msg = str(body.get("message") or f"HTTP {resp.status_code}")
        raise DisbursementFailed(f"Transfer rejected: {msg}", detail={"status": resp.status_code})

    data = body.get("data") or {}
    status = str(data.get("status") or "").lower()
    if status in ("failed", "reversed", "rejected"):
        raise DisbursementFailed(f"Transfer {status}")
    logger.info(f"[paystack.transfer] reference={reference} status={status}")
    return TransferResult(
        transfer_code=str(data.get("transfer_code") or data.get("id") or reference),
        status=status,
        reference=reference,
    )


def verify_webhook_signature(raw_body: bytes, headers: Mapping[str, str]) -> Optional[Dict[str, Any]]:
    """Authenticate a webhook delivery.

    Returns the parsed payload for Standard Webhooks deliveries, None when
    the HMAC header checks out (caller parses the body), and raises
    WebhookVerificationError otherwise.
    """
    secret = PAYSTACK_WEBHOOK_SECRET
    if secret.startswith("whsec_"):
        std_headers = {
            "webhook-id": headers.get("webhook-id") or "",
            "webhook-timestamp": headers.get("webhook-timestamp") or "",
            "webhook-signature": headers.get("webhook-signature") or "",
        }
        return Webhook(secret).verify(data=raw_body, headers=std_headers)

    key = secret or PAYSTACK_SECRET_KEY
    if not key:
        raise WebhookVerificationError("No webhook secret configured")
    provided = (headers.get("x-paystack-signature") or "").strip()
    expected = hmac.new(key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    if not provided or not hmac.compare_digest(provided, expected):
        raise WebhookVerificationError("Signature mismatch")
    return None
