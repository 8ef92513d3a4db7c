"""
Payout Pipeline
Turns confirmed token burns into INR bank payouts.

    arm(burn)            -> pending
    pending   initiate   -> processing | pending_manual
    processing provider  -> sent -> completed | reversed | failed
    failed    retry      -> pending
    *         mark_complete (admin, manual settlement) -> completed

Every provider call carries the Payout id as its reference. Status updates
for one payout are serialized on the payout_{id} lock.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, or_, select

from config import Config
from database import async_managed_session
from models import BankDetail, BurnRecord, BurnStatus, Payout, PayoutStatus
from services.atomic_lock_manager import LockOperationType, atomic_lock_manager
from services.bank_detail_service import BankDetailService, bank_detail_to_dict
from services.razorpay_service import map_provider_status
from utils.exceptions import AlreadyAdvancedError, BadInputError, NotFoundError, ProviderError

logger = logging.getLogger(__name__)

MANUAL_NOT_CONFIGURED = "Payouts API not configured. Manual bank transfer required."
MANUAL_NO_BANK_DETAIL = "No active bank detail on file. Manual bank transfer required."

# Statuses a provider report may still move
PROVIDER_MUTABLE_STATUSES = {
    PayoutStatus.PENDING.value,
    PayoutStatus.PROCESSING.value,
    PayoutStatus.SENT.value,
}

MARK_COMPLETE_FROM = {
    PayoutStatus.PENDING_MANUAL.value,
    PayoutStatus.PENDING.value,
    PayoutStatus.PROCESSING.value,
    PayoutStatus.FAILED.value,
}


def payout_to_dict(payout: Payout) -> Dict[str, Any]:
    burn = payout.burn_record
    return {
        "id": payout.id,
        "user_id": payout.user_id,
        "burn_record_id": payout.burn_record_id,
        "bank_detail_id": payout.bank_detail_id,
        "amount_usd": str(payout.amount_usd),
        "amount_inr": str(payout.amount_inr),
        "exchange_rate": str(payout.exchange_rate),
        "status": payout.status,
        "provider_payout_id": payout.provider_payout_id,
        "provider_status": payout.provider_status,
        "utr": payout.utr,
        "failure_reason": payout.failure_reason,
        "retry_count": payout.retry_count,
        "manual_processed_by": payout.manual_processed_by,
        "manual_processed_at": payout.manual_processed_at.isoformat() if payout.manual_processed_at else None,
        "admin_notes": payout.admin_notes or [],
        "initiated_at": payout.initiated_at.isoformat() if payout.initiated_at else None,
        "completed_at": payout.completed_at.isoformat() if payout.completed_at else None,
        "created_at": payout.created_at.isoformat() if payout.created_at else None,
        "burn": {"id": burn.id, "tx_hash": burn.tx_hash, "status": burn.status} if burn else None,
        "bank_detail": bank_detail_to_dict(payout.bank_detail) if payout.bank_detail else None,
    }


def to_inr(amount_usd: Decimal, rate: Decimal) -> Decimal:
    return (Decimal(amount_usd) * Decimal(rate)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_paise(amount_inr: Decimal) -> int:
    return int((Decimal(amount_inr) * 100).to_integral_value(rounding=ROUND_HALF_UP))


class PayoutPipeline:
    def __init__(self, provider=None, burn_ledger=None, lock_manager=None,
                 session_factory: Callable = async_managed_session):
        self._provider = provider
        self._burn_ledger = burn_ledger
        self.lock_manager = lock_manager or atomic_lock_manager
        self.session_factory = session_factory

    @property
    def provider(self):
        if self._provider is None:
            from services.razorpay_service import get_razorpay_service
            self._provider = get_razorpay_service()
        return self._provider

    @property
    def burn_ledger(self):
        if self._burn_ledger is None:
            from services.burn_ledger import get_burn_ledger
            self._burn_ledger = get_burn_ledger()
        return self._burn_ledger

    def _payout_lock(self, payout_id: str):
        return self.lock_manager.hold(f"payout_{payout_id}", LockOperationType.PAYOUT_UPDATE, resource_id=payout_id)

    @staticmethod
    def _transition(payout: Payout, new_status: PayoutStatus, source: str):
        old_status = payout.status
        payout.status = new_status.value
        metadata = dict(payout.payout_metadata or {})
        history = list(metadata.get("history", []))
        history.append({"from": old_status, "to": new_status.value, "source": source, "at": datetime.utcnow().isoformat()})
        metadata["history"] = history
        payout.payout_metadata = metadata
        logger.info(f"💱 PAYOUT_STATUS: {payout.id} {old_status} -> {new_status.value} ({source})")

    async def _load(self, session, payout_id: str) -> Payout:
        payout = await session.get(Payout, payout_id, with_for_update=True)
        if payout is None:
            raise NotFoundError("Payout not found")
        return payout

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def claim_payout(self, user_id: str, amount_usd, bank_detail_id: str) -> Dict[str, Any]:
        """Burn the user's tokens toward a payout into their chosen bank account"""
        try:
            amount = Decimal(str(amount_usd))
        except (ArithmeticError, ValueError):
            raise BadInputError("Invalid amount")
        if not amount.is_finite() or amount < Config.MIN_CLAIM_USD:
            raise BadInputError(f"Minimum claim amount is {Config.MIN_CLAIM_USD} USD")
        if amount != amount.quantize(Decimal("0.01")):
            raise BadInputError("Amount supports at most two decimal places")

        async with self.session_factory() as session:
            await BankDetailService.get_owned(session, user_id, bank_detail_id)

        burn = await self.burn_ledger.request_burn(user_id, amount, bank_detail_id=bank_detail_id)
        logger.info(f"🧾 CLAIM_SUBMITTED: user={user_id} usd={amount} burn={burn['id']}")
        return {
            "message": "Claim submitted. The payout starts once the burn is confirmed on-chain.",
            "burn": burn,
        }

    # ------------------------------------------------------------------
    # Arming and initiation
    # ------------------------------------------------------------------

    async def arm(self, burn_id: str) -> Dict[str, Any]:
        """Create the single Payout backed by a confirmed burn and start it"""
        async with self.lock_manager.hold(f"payout_arm_{burn_id}", LockOperationType.PAYOUT_ARM, resource_id=burn_id):
            async with self.session_factory() as session:
                burn = await session.get(BurnRecord, burn_id, with_for_update=True)
                if burn is None:
                    raise NotFoundError("Burn record not found")
                if burn.status != BurnStatus.CONFIRMED.value:
                    raise BadInputError(f"Burn {burn_id} is {burn.status}; only confirmed burns arm a payout")
                if burn.linked_payout_id:
                    existing = await session.get(Payout, burn.linked_payout_id)
                    logger.info(f"🔄 PAYOUT_ALREADY_ARMED: burn={burn_id} payout={burn.linked_payout_id}")
                    return payout_to_dict(existing)

                bank_detail = None
                if burn.bank_detail_id:
                    bank_detail = await session.get(BankDetail, burn.bank_detail_id)
                    if bank_detail is not None and not bank_detail.is_active:
                        bank_detail = None
                if bank_detail is None:
                    bank_detail = await BankDetailService.get_default(session, burn.user_id)

                rate = Config.USD_TO_INR_RATE
                payout = Payout(
                    id=str(uuid.uuid4()),
                    user_id=burn.user_id,
                    burn_record_id=burn.id,
                    bank_detail_id=bank_detail.id if bank_detail else None,
                    amount_usd=burn.amount_usd,
                    exchange_rate=rate,
                    amount_inr=to_inr(burn.amount_usd, rate),
                    status=PayoutStatus.PENDING.value,
                    retry_count=0,
                )
                session.add(payout)
                burn.linked_payout_id = payout.id
                if bank_detail is None:
                    self._transition(payout, PayoutStatus.PENDING_MANUAL, "arm")
                    payout.failure_reason = MANUAL_NO_BANK_DETAIL
                await session.flush()
                payout_id, status = payout.id, payout.status
                logger.info(
                    f"💰 PAYOUT_ARMED: payout={payout_id} burn={burn_id} usd={payout.amount_usd} "
                    f"inr={payout.amount_inr} @ {rate}"
                )

        if status == PayoutStatus.PENDING.value:
            return await self.initiate(payout_id)
        return await self.get_payout(payout_id)

    async def _ensure_fund_account(self, bank_detail_id: str) -> str:
        async with self.session_factory() as session:
            bank = await session.get(BankDetail, bank_detail_id)
            if bank.provider_fund_account_id:
                return bank.provider_fund_account_id

            contact_id = bank.provider_contact_id
            if not contact_id:
                result = await session.execute(
                    select(BankDetail.provider_contact_id).where(
                        BankDetail.user_id == bank.user_id, BankDetail.provider_contact_id.is_not(None)
                    ).limit(1)
                )
                contact_id = result.scalar_one_or_none()
            bank.provider_contact_id = contact_id
            holder_name, routing_code, account_number = bank.holder_name, bank.routing_code, bank.account_number
            user_id = bank.user_id

        # contact id is committed before the fund-account call
        if not contact_id:
            contact_id = await self.provider.create_contact(holder_name, reference_id=user_id)
            async with self.session_factory() as session:
                bank = await session.get(BankDetail, bank_detail_id)
                bank.provider_contact_id = contact_id
            logger.info(f"🏦 PROVIDER_CONTACT_CREATED: user={user_id} contact={contact_id}")

        fund_account_id = await self.provider.create_fund_account(contact_id, holder_name, routing_code, account_number)
        async with self.session_factory() as session:
            bank = await session.get(BankDetail, bank_detail_id)
            bank.provider_fund_account_id = fund_account_id
        return fund_account_id

    async def _fall_back_to_manual(self, payout_id: str, cause: str) -> Dict[str, Any]:
        async with self.session_factory() as session:
            payout = await self._load(session, payout_id)
            self._transition(payout, PayoutStatus.PENDING_MANUAL, "initiate")
            payout.failure_reason = f"Auto-payout failed: {cause}. Please process manually."
            return payout_to_dict(payout)

    async def initiate(self, payout_id: str) -> Dict[str, Any]:
        async with self._payout_lock(payout_id):
            async with self.session_factory() as session:
                payout = await self._load(session, payout_id)
                if payout.status != PayoutStatus.PENDING.value:
                    return payout_to_dict(payout)
                if not self.provider.is_available():
                    self._transition(payout, PayoutStatus.PENDING_MANUAL, "initiate")
                    payout.failure_reason = MANUAL_NOT_CONFIGURED
                    logger.warning(f"🏦 PAYOUT_MANUAL: {payout_id} - payouts API not configured")
                    return payout_to_dict(payout)
                if payout.bank_detail_id is None:
                    self._transition(payout, PayoutStatus.PENDING_MANUAL, "initiate")
                    payout.failure_reason = MANUAL_NO_BANK_DETAIL
                    return payout_to_dict(payout)
                bank_detail_id, amount_inr = payout.bank_detail_id, payout.amount_inr

            try:
                fund_account_id = await self._ensure_fund_account(bank_detail_id)
                result = await self.provider.create_payout(
                    fund_account_id,
                    to_paise(amount_inr),
                    reference_id=payout_id,
                    currency="INR",
                    mode="IMPS",
                    narration="Marketplace payout",
                )
            except ProviderError as e:
                logger.error(f"❌ PAYOUT_AUTO_FAILED: {payout_id} {e.code}: {e.message}")
                return await self._fall_back_to_manual(payout_id, e.message)
            except Exception as e:
                # anything else must not strand the payout in pending
                logger.error(f"❌ PAYOUT_AUTO_FAILED: {payout_id} unexpected {type(e).__name__}: {e}")
                return await self._fall_back_to_manual(payout_id, f"unexpected {type(e).__name__}")

            async with self.session_factory() as session:
                payout = await self._load(session, payout_id)
                payout.provider_payout_id = result.get("id")
                payout.initiated_at = datetime.utcnow()
                self._transition(payout, PayoutStatus.PROCESSING, "initiate")
                self._apply_provider_status(payout, result.get("status"), result.get("utr"), result.get("failure_reason"), "initiate")
                return payout_to_dict(payout)

    # ------------------------------------------------------------------
    # Provider status updates
    # ------------------------------------------------------------------

    def _apply_provider_status(
        self, payout: Payout, provider_status: Optional[str], utr: Optional[str],
        failure_reason: Optional[str], source: str,
    ) -> bool:
        """Map a provider report onto the payout; returns whether the status changed"""
        if payout.status not in PROVIDER_MUTABLE_STATUSES:
            logger.info(f"🔄 PAYOUT_UPDATE_IGNORED: {payout.id} is {payout.status}; provider says {provider_status}")
            return False

        mapped = map_provider_status(provider_status)
        if provider_status:
            payout.provider_status = provider_status
        if utr:
            payout.utr = utr

        if mapped is None or mapped.value == payout.status:
            return False
        if mapped == PayoutStatus.COMPLETED:
            self._transition(payout, PayoutStatus.SENT, source)
            self._transition(payout, PayoutStatus.COMPLETED, source)
            payout.completed_at = datetime.utcnow()
        elif mapped in (PayoutStatus.FAILED, PayoutStatus.REVERSED):
            self._transition(payout, mapped, source)
            payout.failure_reason = failure_reason or f"Provider reported {provider_status}"
            logger.error(f"🚨 ALERT PAYOUT_{mapped.value.upper()}: {payout.id} {payout.failure_reason}")
        else:
            self._transition(payout, mapped, source)
        return True

    async def find_payout_id(self, reference_id: Optional[str], provider_payout_id: Optional[str]) -> Optional[str]:
        conditions = []
        if reference_id:
            conditions.append(Payout.id == reference_id)
        if provider_payout_id:
            conditions.append(Payout.provider_payout_id == provider_payout_id)
        if not conditions:
            return None
        async with self.session_factory() as session:
            result = await session.execute(select(Payout.id).where(or_(*conditions)).limit(1))
            return result.scalar_one_or_none()

    async def apply_provider_update(
        self,
        payout_id: str,
        provider_status: Optional[str],
        provider_payout_id: Optional[str] = None,
        utr: Optional[str] = None,
        failure_reason: Optional[str] = None,
        source: str = "webhook",
    ) -> Dict[str, Any]:
        async with self._payout_lock(payout_id):
            async with self.session_factory() as session:
                payout = await self._load(session, payout_id)
                if provider_payout_id and not payout.provider_payout_id:
                    payout.provider_payout_id = provider_payout_id
                changed = self._apply_provider_status(payout, provider_status, utr, failure_reason, source)
                result = payout_to_dict(payout)
                result["changed"] = changed
                return result

    async def sync_payout_status(self, payout_id: str) -> Dict[str, Any]:
        async with self.session_factory() as session:
            payout = await self._load(session, payout_id)
            provider_payout_id = payout.provider_payout_id
        if not provider_payout_id:
            raise BadInputError("Payout has no provider payout id to sync")

        report = await self.provider.fetch_payout(provider_payout_id)
        return await self.apply_provider_update(
            payout_id,
            report.get("status"),
            utr=report.get("utr"),
            failure_reason=report.get("failure_reason"),
            source="sync",
        )

    async def sync_processing_payouts(self) -> Dict[str, int]:
        """Poll the provider for payouts stuck in processing longer than the sync interval"""
        if not self.provider.is_available():
            return {"checked": 0, "updated": 0, "errors": 0}
        cutoff = datetime.utcnow() - timedelta(minutes=Config.PAYOUT_SYNC_INTERVAL_MINUTES)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payout.id)
                .where(
                    Payout.status.in_([PayoutStatus.PROCESSING.value, PayoutStatus.SENT.value]),
                    Payout.provider_payout_id.is_not(None),
                    Payout.updated_at <= cutoff,
                )
                .order_by(Payout.updated_at)
                .limit(50)
            )
            payout_ids = list(result.scalars().all())

        summary = {"checked": 0, "updated": 0, "errors": 0}
        for payout_id in payout_ids:
            summary["checked"] += 1
            try:
                result = await self.sync_payout_status(payout_id)
                if result.get("changed"):
                    summary["updated"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"❌ PAYOUT_SYNC_ERROR: {payout_id}: {e}")
        if payout_ids:
            logger.info(f"🔄 PAYOUT_SYNC: {summary}")
        return summary

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def retry_payout(self, payout_id: str, admin_id: str) -> Dict[str, Any]:
        async with self._payout_lock(payout_id):
            async with self.session_factory() as session:
                payout = await self._load(session, payout_id)
                if payout.status != PayoutStatus.FAILED.value:
                    raise BadInputError(f"Only failed payouts can be retried (status is {payout.status})")
                self._transition(payout, PayoutStatus.PENDING, f"retry by {admin_id}")
                payout.failure_reason = None
                payout.provider_payout_id = None
                payout.provider_status = None
                payout.utr = None
                payout.retry_count = (payout.retry_count or 0) + 1
        logger.info(f"🔁 PAYOUT_RETRY: {payout_id} by admin {admin_id}")
        return await self.initiate(payout_id)

    async def mark_complete(
        self, payout_id: str, admin_id: str, utr: Optional[str] = None, notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Record an out-of-band settlement"""
        async with self._payout_lock(payout_id):
            async with self.session_factory() as session:
                payout = await self._load(session, payout_id)
                if payout.status == PayoutStatus.COMPLETED.value:
                    raise AlreadyAdvancedError("Payout is already completed", details={"payout_id": payout_id})
                if payout.status not in MARK_COMPLETE_FROM:
                    raise BadInputError(f"Cannot complete payout with status: {payout.status}")

                burn = await session.get(BurnRecord, payout.burn_record_id)
                if burn is None or burn.status != BurnStatus.CONFIRMED.value or burn.linked_payout_id != payout.id:
                    raise BadInputError("Payout is not backed by a confirmed burn")

                previous_status = payout.status
                now = datetime.utcnow()
                self._transition(payout, PayoutStatus.COMPLETED, f"manual by {admin_id}")
                payout.completed_at = now
                payout.manual_processed_by = admin_id
                payout.manual_processed_at = now
                if utr:
                    payout.utr = utr
                payout.admin_notes = list(payout.admin_notes or []) + [{
                    "note": notes,
                    "utr": utr,
                    "added_by": admin_id,
                    "added_at": now.isoformat(),
                    "previous_status": previous_status,
                    "new_status": PayoutStatus.COMPLETED.value,
                }]
                logger.info(f"✅ PAYOUT_MANUAL_COMPLETE: {payout_id} utr={utr} by {admin_id}")
                return payout_to_dict(payout)

    async def get_payout(self, payout_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        async with self.session_factory() as session:
            payout = await session.get(Payout, payout_id)
            if payout is None or (user_id is not None and payout.user_id != user_id):
                raise NotFoundError("Payout not found")
            return payout_to_dict(payout)

    async def list_payouts(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
        include_stats: bool = False,
    ) -> Dict[str, Any]:
        if status and status not in {s.value for s in PayoutStatus}:
            raise BadInputError(f"Unknown payout status: {status}")
        page, limit = max(1, page), min(max(1, limit), 100)

        conditions = []
        if user_id:
            conditions.append(Payout.user_id == user_id)
        if status:
            conditions.append(Payout.status == status)
        if created_from:
            conditions.append(Payout.created_at >= created_from)
        if created_to:
            conditions.append(Payout.created_at <= created_to)

        async with self.session_factory() as session:
            total = (await session.execute(
                select(func.count()).select_from(Payout).where(*conditions)
            )).scalar_one()
            result = await session.execute(
                select(Payout)
                .where(*conditions)
                .order_by(Payout.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            response = {
                "payouts": [payout_to_dict(p) for p in result.scalars().all()],
                "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
            }

            if include_stats:
                rows = await session.execute(
                    select(Payout.status, func.count(), func.sum(Payout.amount_inr), func.sum(Payout.amount_usd))
                    .group_by(Payout.status)
                )
                response["stats"] = {
                    row[0]: {
                        "count": row[1],
                        "total_amount_inr": str(row[2] or 0),
                        "total_amount_usd": str(row[3] or 0),
                    }
                    for row in rows.all()
                }
            return response


_payout_pipeline: Optional[PayoutPipeline] = None


def get_payout_pipeline() -> PayoutPipeline:
    global _payout_pipeline
    if _payout_pipeline is None:
        _payout_pipeline = PayoutPipeline()
    return _payout_pipeline
