"""
Razorpay Service Tests
Webhook signatures, status mapping and request retry classification
"""

import hashlib
import hmac
from unittest.mock import patch

import pytest

from models import PayoutStatus
from services.razorpay_service import RazorpayService, map_provider_status
from utils.exceptions import ProviderRejectedError, ProviderUnavailableError


class FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        return self._payload

    async def text(self):
        return str(self._payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Replays scripted responses and records every request"""

    def __init__(self, responses, calls):
        self._responses = responses
        self._calls = calls

    def request(self, method, url, headers=None, json=None, auth=None):
        self._calls.append({"method": method, "url": url, "headers": headers, "json": json})
        return self._responses.pop(0)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _session_factory(responses, calls):
    def factory(*args, **kwargs):
        return FakeSession(responses, calls)
    return factory


@pytest.fixture
def service():
    return RazorpayService(
        key_id="rzp_test_key",
        key_secret="rzp_test_secret",
        account_number="2323230000000000",
        webhook_secret="whsec_test",
        base_url="https://api.razorpay.test/v1",
    )


class TestWebhookSignature:

    def test_valid_signature(self, service):
        body = b'{"event":"payout.processed"}'
        signature = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()
        assert service.verify_webhook_signature(body, signature) is True

    def test_invalid_signature(self, service):
        assert service.verify_webhook_signature(b"{}", "deadbeef") is False
        assert service.verify_webhook_signature(b"{}", None) is False

    def test_missing_secret_rejects(self):
        service = RazorpayService(key_id="k", key_secret="s", account_number="a", webhook_secret="")
        body = b"{}"
        signature = hmac.new(b"", body, hashlib.sha256).hexdigest()
        assert service.verify_webhook_signature(body, signature) is False


class TestStatusMapping:

    @pytest.mark.parametrize("provider_status,expected", [
        ("queued", PayoutStatus.PROCESSING),
        ("processing", PayoutStatus.PROCESSING),
        ("processed", PayoutStatus.COMPLETED),
        ("REVERSED", PayoutStatus.REVERSED),
        ("rejected", PayoutStatus.FAILED),
        ("cancelled", PayoutStatus.FAILED),
    ])
    def test_known_statuses(self, provider_status, expected):
        assert map_provider_status(provider_status) == expected

    def test_unknown_status(self):
        assert map_provider_status("on_hold_forever") is None
        assert map_provider_status(None) is None

    def test_availability(self, service):
        assert service.is_available() is True
        assert RazorpayService(key_id="", key_secret="", account_number="").is_available() is False


class TestRequests:

    @pytest.mark.asyncio
    async def test_payout_sends_idempotency_key(self, service):
        calls = []
        responses = [FakeResponse(200, {"id": "pout_1", "status": "processing", "utr": None})]
        with patch("services.razorpay_service.aiohttp.ClientSession", _session_factory(responses, calls)):
            result = await service.create_payout("fa_1", 222500, "payout-ref-1")

        assert result == {"id": "pout_1", "status": "processing", "utr": None, "failure_reason": None}
        assert calls[0]["headers"]["X-Payout-Idempotency"] == "payout-ref-1"
        assert calls[0]["json"]["amount"] == 222500
        assert calls[0]["url"] == "https://api.razorpay.test/v1/payouts"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, service):
        calls = []
        responses = [FakeResponse(400, {"error": {"code": "BAD_REQUEST_ERROR", "description": "Invalid IFSC"}})]
        with patch("services.razorpay_service.aiohttp.ClientSession", _session_factory(responses, calls)):
            with pytest.raises(ProviderRejectedError) as exc_info:
                await service.create_fund_account("cont_1", "Asha Rao", "HDFC0001234", "123456789012")

        assert "Invalid IFSC" in exc_info.value.message
        assert len(calls) == 1, "4xx answers must not be retried"

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, service):
        calls = []
        responses = [
            FakeResponse(503, {"error": {"description": "maintenance"}}),
            FakeResponse(503, {"error": {"description": "maintenance"}}),
        ]
        with patch("services.razorpay_service.aiohttp.ClientSession", _session_factory(responses, calls)):
            with pytest.raises(ProviderUnavailableError):
                await service.fetch_payout("pout_1")

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_unconfigured_service_unavailable(self):
        service = RazorpayService(key_id="", key_secret="", account_number="")
        with pytest.raises(ProviderUnavailableError):
            await service.create_contact("Asha Rao", "user-1")
