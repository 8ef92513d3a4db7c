"""
Razorpay Webhook Handler
Payout status callbacks, authenticated with X-Razorpay-Signature and
deduplicated through the webhook event ledger
"""

import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import orjson
from fastapi import APIRouter, Header, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from database import async_managed_session
from models import WebhookEventLedger
from services.payout_pipeline import get_payout_pipeline
from services.razorpay_service import get_razorpay_service
from utils.exceptions import BadInputError, EscrowCoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payouts", tags=["webhooks"])

PROVIDER = "razorpay"


async def _claim_event(event_id: str, event_type: str, reference_id: Optional[str], payload: Dict[str, Any]) -> bool:
    """Record the delivery; False when the same event was already processed"""
    try:
        async with async_managed_session() as session:
            session.add(WebhookEventLedger(
                event_provider=PROVIDER,
                event_id=event_id,
                event_type=event_type,
                reference_id=reference_id,
                payload=payload,
                status="processing",
            ))
        return True
    except IntegrityError:
        async with async_managed_session() as session:
            result = await session.execute(
                select(WebhookEventLedger.status).where(
                    WebhookEventLedger.event_provider == PROVIDER,
                    WebhookEventLedger.event_id == event_id,
                )
            )
            status = result.scalar_one_or_none()
        return status != "completed"


async def _finish_event(event_id: str, status: str, result: Optional[str] = None, error: Optional[str] = None):
    async with async_managed_session() as session:
        result_row = await session.execute(
            select(WebhookEventLedger).where(
                WebhookEventLedger.event_provider == PROVIDER,
                WebhookEventLedger.event_id == event_id,
            )
        )
        event = result_row.scalar_one_or_none()
        if event is not None:
            event.status = status
            event.processing_result = result
            event.error_message = error
            event.completed_at = datetime.utcnow()


async def process_razorpay_event(webhook_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
    """Apply one verified payout event"""
    event_type = webhook_data.get("event", "unknown")
    if not event_type.startswith("payout."):
        logger.info(f"ℹ️ RAZORPAY_WEBHOOK_IGNORED: {event_type}")
        return {"status": "ignored", "event": event_type}

    entity = ((webhook_data.get("payload") or {}).get("payout") or {}).get("entity") or {}
    provider_payout_id = entity.get("id")
    reference_id = entity.get("reference_id")
    provider_status = entity.get("status")
    failure_reason = (entity.get("status_details") or {}).get("description") or entity.get("failure_reason")

    if not await _claim_event(event_id, event_type, reference_id or provider_payout_id, webhook_data):
        logger.info(f"🔄 RAZORPAY_WEBHOOK_DUPLICATE: {event_id}")
        return {"status": "duplicate", "event_id": event_id}

    pipeline = get_payout_pipeline()
    try:
        payout_id = await pipeline.find_payout_id(reference_id, provider_payout_id)
        if payout_id is None:
            logger.warning(f"⚠️ RAZORPAY_WEBHOOK_UNMATCHED: ref={reference_id} payout={provider_payout_id}")
            await _finish_event(event_id, "completed", result="unmatched")
            return {"status": "ignored", "reason": "unknown_payout"}

        payout = await pipeline.apply_provider_update(
            payout_id,
            provider_status,
            provider_payout_id=provider_payout_id,
            utr=entity.get("utr"),
            failure_reason=failure_reason,
            source=f"webhook {event_type}",
        )
    except EscrowCoreError as e:
        await _finish_event(event_id, "failed", error=f"{e.code}: {e.message}")
        raise

    await _finish_event(event_id, "completed", result=payout["status"])
    logger.info(f"✅ RAZORPAY_WEBHOOK: {event_type} payout={payout_id} -> {payout['status']} changed={payout['changed']}")
    return {"status": "processed", "payout_id": payout_id, "payout_status": payout["status"], "changed": payout["changed"]}


@router.post("/webhook/razorpay")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
):
    body = await request.body()
    if not body:
        raise BadInputError("Empty request body")

    if not get_razorpay_service().verify_webhook_signature(body, x_razorpay_signature):
        logger.warning("🚫 RAZORPAY_WEBHOOK_SIGNATURE_INVALID")
        raise BadInputError("Invalid webhook signature")

    try:
        webhook_data = orjson.loads(body)
    except orjson.JSONDecodeError:
        raise BadInputError("Invalid JSON format")
    if not isinstance(webhook_data, dict):
        raise BadInputError("Invalid webhook data")

    event_id = x_razorpay_event_id or hashlib.sha256(body).hexdigest()
    return await process_razorpay_event(webhook_data, event_id)
