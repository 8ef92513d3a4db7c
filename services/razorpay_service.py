"""
Razorpay Payouts Service for INR bank transfers
Contacts, fund accounts, payouts, status lookups and webhook signatures
"""

import asyncio
import hashlib
import hmac
import logging
import random
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from models import PayoutStatus
from services.circuit_breaker import with_circuit_breaker
from utils.exceptions import ProviderRejectedError, ProviderUnavailableError

logger = logging.getLogger(__name__)


# Provider payout status -> internal payout status
PROVIDER_STATUS_MAP: Dict[str, PayoutStatus] = {
    "created": PayoutStatus.PROCESSING,
    "queued": PayoutStatus.PROCESSING,
    "pending": PayoutStatus.PROCESSING,
    "processing": PayoutStatus.PROCESSING,
    "processed": PayoutStatus.COMPLETED,
    "reversed": PayoutStatus.REVERSED,
    "cancelled": PayoutStatus.FAILED,
    "rejected": PayoutStatus.FAILED,
    "failed": PayoutStatus.FAILED,
}


def map_provider_status(provider_status: Optional[str]) -> Optional[PayoutStatus]:
    if not provider_status:
        return None
    mapped = PROVIDER_STATUS_MAP.get(provider_status.lower())
    if mapped is None:
        logger.warning(f"⚠️ UNKNOWN_PROVIDER_STATUS: '{provider_status}'")
    return mapped


class RazorpayService:
    """Razorpay X payouts client"""

    RETRYABLE_STATUSES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        account_number: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: int = 30,
        max_retries: int = 2,
    ):
        self.key_id = key_id if key_id is not None else Config.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else Config.RAZORPAY_KEY_SECRET
        self.account_number = account_number if account_number is not None else Config.RAZORPAY_ACCOUNT_NUMBER
        self.webhook_secret = webhook_secret if webhook_secret is not None else Config.RAZORPAY_WEBHOOK_SECRET
        self.base_url = (base_url or Config.RAZORPAY_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries

    def is_available(self) -> bool:
        """Check the payouts product is configured"""
        return bool(self.key_id and self.key_secret and self.account_number)

    @with_circuit_breaker("razorpay")
    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Authenticated request with retry on rate limits and 5xx.

        Raises ProviderRejectedError for 4xx answers (never retried) and
        ProviderUnavailableError when the provider cannot be reached.
        """
        if not self.is_available():
            raise ProviderUnavailableError("Razorpay payouts are not configured")

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if idempotency_key:
            headers["X-Payout-Idempotency"] = idempotency_key
        auth = aiohttp.BasicAuth(self.key_id, self.key_secret)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        last_error = "unknown error"
        for attempt in range(self.max_retries):
            try:
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.request(method, url, headers=headers, json=data, auth=auth) as response:
                        try:
                            response_data = await response.json(content_type=None)
                        except (aiohttp.ContentTypeError, ValueError):
                            response_data = {"raw": await response.text()}

                        if response.status in (200, 201):
                            logger.info(f"Razorpay API success: {method} {endpoint}")
                            return response_data or {}

                        error = (response_data or {}).get("error") or {}
                        description = error.get("description") or str(response_data)

                        if response.status == 401:
                            logger.error("🔑 Razorpay authentication failed - check RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET")
                            raise ProviderRejectedError(
                                "Razorpay authentication failed", details={"status": response.status}
                            )

                        if response.status in self.RETRYABLE_STATUSES:
                            last_error = f"{response.status}: {description}"
                            if attempt < self.max_retries - 1:
                                delay = 0.5 + random.uniform(0, 0.3)
                                logger.warning(
                                    f"Razorpay {response.status}, retrying in {delay:.2f}s (attempt {attempt + 1})"
                                )
                                await asyncio.sleep(delay)
                                continue
                            break

                        logger.error(f"Razorpay API error: {response.status} - {description}")
                        raise ProviderRejectedError(
                            description,
                            details={"status": response.status, "code": error.get("code"), "field": error.get("field")},
                        )

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e or 'network error'}"
                if attempt < self.max_retries - 1:
                    delay = 0.5 + random.uniform(0, 0.3)
                    logger.warning(f"Razorpay network error, retrying in {delay:.2f}s (attempt {attempt + 1}): {last_error}")
                    await asyncio.sleep(delay)
                    continue
                break

        logger.error(f"Razorpay unavailable after {self.max_retries} attempts: {last_error}")
        raise ProviderUnavailableError(f"Razorpay unavailable: {last_error}")

    async def create_contact(
        self, name: str, reference_id: str, email: Optional[str] = None, contact: Optional[str] = None
    ) -> str:
        payload = {"name": name, "type": "customer", "reference_id": reference_id}
        if email:
            payload["email"] = email
        if contact:
            payload["contact"] = contact
        response = await self._make_request("POST", "contacts", payload)
        logger.info(f"👤 RAZORPAY_CONTACT: {response.get('id')} for {reference_id}")
        return response["id"]

    async def create_fund_account(self, contact_id: str, holder_name: str, routing_code: str, account_number: str) -> str:
        payload = {
            "contact_id": contact_id,
            "account_type": "bank_account",
            "bank_account": {"name": holder_name, "ifsc": routing_code, "account_number": account_number},
        }
        response = await self._make_request("POST", "fund_accounts", payload)
        logger.info(f"🏦 RAZORPAY_FUND_ACCOUNT: {response.get('id')} for contact {contact_id}")
        return response["id"]

    async def create_payout(
        self,
        fund_account_id: str,
        amount_minor: int,
        reference_id: str,
        currency: str = "INR",
        mode: str = "IMPS",
        narration: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Submit a payout; reference_id is our Payout id and doubles as the idempotency key"""
        payload = {
            "account_number": self.account_number,
            "fund_account_id": fund_account_id,
            "amount": int(amount_minor),
            "currency": currency,
            "mode": mode,
            "purpose": "payout",
            "queue_if_low_balance": True,
            "reference_id": reference_id,
        }
        if narration:
            payload["narration"] = narration[:30]
        response = await self._make_request("POST", "payouts", payload, idempotency_key=reference_id)
        logger.info(f"💸 RAZORPAY_PAYOUT: {response.get('id')} ref={reference_id} status={response.get('status')}")
        return {
            "id": response.get("id"),
            "status": response.get("status"),
            "utr": response.get("utr"),
            "failure_reason": (response.get("status_details") or {}).get("description"),
        }

    async def fetch_payout(self, provider_payout_id: str) -> Dict[str, Any]:
        response = await self._make_request("GET", f"payouts/{provider_payout_id}")
        return {
            "id": response.get("id"),
            "status": response.get("status"),
            "utr": response.get("utr"),
            "failure_reason": (response.get("status_details") or {}).get("description") or response.get("failure_reason"),
        }

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Hex HMAC-SHA256 of the raw body under the webhook secret"""
        if not self.webhook_secret:
            logger.error("❌ RAZORPAY_WEBHOOK_SECRET not configured - rejecting webhook")
            return False
        if not signature:
            return False
        expected = hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)


_razorpay_instance: Optional[RazorpayService] = None


def get_razorpay_service() -> RazorpayService:
    global _razorpay_instance
    if _razorpay_instance is None:
        _razorpay_instance = RazorpayService()
    return _razorpay_instance
