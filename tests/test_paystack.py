"""Paystack client behaviour against a mocked transport."""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone

import httpx
import pytest
from standardwebhooks import Webhook, WebhookVerificationError

from core.errors import DisbursementFailed, VerificationFailed
from utils import paystack


@pytest.fixture
def provider(monkeypatch):
    """Route every httpx.AsyncClient in utils.paystack through a handler."""
    real_client = httpx.AsyncClient

    def _install(handler):
        def factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(handler)
            return real_client(*args, **kwargs)
        monkeypatch.setattr(paystack.httpx, "AsyncClient", factory)
    return _install


class TestVerifyTransaction:
    @pytest.mark.asyncio
    async def test_success(self, provider):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={
                "status": True,
                "data": {"status": "success", "reference": "donation_x_1", "amount": 1000000, "currency": "NGN"},
            })
        provider(handler)

        result = await paystack.verify_transaction("donation_x_1")

        assert result.succeeded
        assert result.amount_minor == 1_000_000
        assert result.currency == "NGN"
        assert seen["url"] == "https://paystack.test/transaction/verify/donation_x_1"
        assert seen["auth"] == "Bearer sk_test_chainfund"

    @pytest.mark.asyncio
    async def test_unknown_reference_is_not_retryable(self, provider):
        provider(lambda request: httpx.Response(404, json={"status": False, "message": "Transaction reference not found"}))
        with pytest.raises(VerificationFailed) as exc:
            await paystack.verify_transaction("nope")
        assert exc.value.retryable is False

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, provider):
        provider(lambda request: httpx.Response(502, text="bad gateway"))
        with pytest.raises(VerificationFailed) as exc:
            await paystack.verify_transaction("donation_x_1")
        assert exc.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, provider):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)
        provider(handler)
        with pytest.raises(VerificationFailed) as exc:
            await paystack.verify_transaction("donation_x_1")
        assert exc.value.retryable is True


class TestInitiateTransfer:
    @pytest.mark.asyncio
    async def test_sends_minor_units(self, provider):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={"status": True, "data": {"transfer_code": "TRF_1", "status": "success"}})
        provider(handler)

        result = await paystack.initiate_transfer("500.00", "RCP_1", "commission_p1")

        assert result.transfer_code == "TRF_1"
        assert sent["amount"] == 50000
        assert sent["recipient"] == "RCP_1"
        assert sent["reference"] == "commission_p1"

    @pytest.mark.asyncio
    async def test_rejected(self, provider):
        provider(lambda request: httpx.Response(400, json={"status": False, "message": "Invalid recipient"}))
        with pytest.raises(DisbursementFailed) as exc:
            await paystack.initiate_transfer("500.00", "RCP_bad", "commission_p1")
        assert exc.value.timed_out is False
        assert "Invalid recipient" in exc.value.message

    @pytest.mark.asyncio
    async def test_timeout_is_flagged(self, provider):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)
        provider(handler)
        with pytest.raises(DisbursementFailed) as exc:
            await paystack.initiate_transfer("500.00", "RCP_1", "commission_p1")
        assert exc.value.timed_out is True


class TestWebhookSignature:
    def test_hmac_signature(self):
        body = b'{"event":"charge.success"}'
        sig = hmac.new(b"sk_test_chainfund", body, hashlib.sha512).hexdigest()
        assert paystack.verify_webhook_signature(body, {"x-paystack-signature": sig}) is None

    def test_bad_hmac_signature(self):
        with pytest.raises(WebhookVerificationError):
            paystack.verify_webhook_signature(b"{}", {"x-paystack-signature": "deadbeef"})

    def test_standard_webhooks(self, monkeypatch):
        secret = "whsec_" + base64.b64encode(b"chainfund-webhook-secret-key").decode()
        monkeypatch.setattr(paystack, "PAYSTACK_WEBHOOK_SECRET", secret)
        body = json.dumps({"event": "charge.success", "data": {"reference": "r1"}})
        now = datetime.now(timezone.utc)
        signature = Webhook(secret).sign("msg_1", now, body)
        headers = {
            "webhook-id": "msg_1",
            "webhook-timestamp": str(int(now.timestamp())),
            "webhook-signature": signature,
        }

        payload = paystack.verify_webhook_signature(body.encode(), headers)

        assert payload["data"]["reference"] == "r1"
