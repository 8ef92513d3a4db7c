"""
Verification Loop
Single reconciler for submitted on-chain transactions: escrow transitions and
token burns. Each cycle takes the oldest in-window records, checks their
receipts and hands mined ones to the escrow coordinator or the burn ledger.
Confirmed burns whose payout was never armed are armed here as well.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select

from config import Config
from database import async_managed_session
from models import BurnRecord, BurnStatus, EscrowTransaction, TxOutcome

logger = logging.getLogger(__name__)

ESCROW_TX = "escrow_tx"
BURN = "burn"
UNARMED_BURN = "unarmed_burn"


@dataclass
class PendingRecord:
    kind: str
    record_id: Any
    tx_hash: str
    submitted_at: datetime


@dataclass
class VerificationCycleResult:
    """Summary of one verification cycle"""
    checked: int = 0
    not_mined: int = 0
    stuck: int = 0
    escrow_confirmed: int = 0
    escrow_reverted: int = 0
    burns_confirmed: int = 0
    burns_failed: int = 0
    payouts_armed: int = 0
    errors: List[str] = field(default_factory=list)
    execution_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "not_mined": self.not_mined,
            "stuck": self.stuck,
            "escrow_confirmed": self.escrow_confirmed,
            "escrow_reverted": self.escrow_reverted,
            "burns_confirmed": self.burns_confirmed,
            "burns_failed": self.burns_failed,
            "payouts_armed": self.payouts_armed,
            "errors": len(self.errors),
            "execution_time_ms": self.execution_time_ms,
        }


class VerificationLoop:
    def __init__(self, gateway=None, coordinator=None, burn_ledger=None,
                 session_factory: Callable = async_managed_session):
        self._gateway = gateway
        self._coordinator = coordinator
        self._burn_ledger = burn_ledger
        self.session_factory = session_factory
        self._cycle_lock = asyncio.Lock()

    @property
    def gateway(self):
        if self._gateway is None:
            from services.chain_gateway import get_chain_gateway
            self._gateway = get_chain_gateway()
        return self._gateway

    @property
    def coordinator(self):
        if self._coordinator is None:
            from services.escrow_coordinator import get_escrow_coordinator
            self._coordinator = get_escrow_coordinator()
        return self._coordinator

    @property
    def burn_ledger(self):
        if self._burn_ledger is None:
            from services.burn_ledger import get_burn_ledger
            self._burn_ledger = get_burn_ledger()
        return self._burn_ledger

    async def select_pending(self, now: Optional[datetime] = None) -> List[PendingRecord]:
        """Oldest submitted or unarmed records inside the verification window, at most one batch"""
        now = now or datetime.utcnow()
        window_start = now - timedelta(hours=Config.VERIFICATION_WINDOW_HOURS)
        batch = Config.VERIFICATION_BATCH_SIZE

        async with self.session_factory() as session:
            escrow_rows = await session.execute(
                select(EscrowTransaction.id, EscrowTransaction.tx_hash, EscrowTransaction.submitted_at)
                .where(
                    EscrowTransaction.outcome == TxOutcome.PENDING.value,
                    EscrowTransaction.tx_hash.is_not(None),
                    EscrowTransaction.submitted_at >= window_start,
                )
                .order_by(EscrowTransaction.submitted_at, EscrowTransaction.id)
                .limit(batch)
            )
            burn_rows = await session.execute(
                select(BurnRecord.id, BurnRecord.tx_hash, BurnRecord.submitted_at)
                .where(
                    BurnRecord.status.in_([BurnStatus.PENDING.value, BurnStatus.SUBMITTED.value]),
                    BurnRecord.tx_hash.is_not(None),
                    BurnRecord.submitted_at >= window_start,
                )
                .order_by(BurnRecord.submitted_at)
                .limit(batch)
            )
            unarmed_rows = await session.execute(
                select(BurnRecord.id, BurnRecord.tx_hash, BurnRecord.verified_at)
                .where(
                    BurnRecord.status == BurnStatus.CONFIRMED.value,
                    BurnRecord.linked_payout_id.is_(None),
                    BurnRecord.verified_at >= window_start,
                )
                .order_by(BurnRecord.verified_at)
                .limit(batch)
            )
            records = [PendingRecord(ESCROW_TX, r.id, r.tx_hash, r.submitted_at) for r in escrow_rows.all()]
            records += [PendingRecord(BURN, r.id, r.tx_hash, r.submitted_at) for r in burn_rows.all()]
            records += [PendingRecord(UNARMED_BURN, r.id, r.tx_hash, r.verified_at) for r in unarmed_rows.all()]

        records.sort(key=lambda r: r.submitted_at)
        return records[:batch]

    async def run_cycle(self) -> VerificationCycleResult:
        if self._cycle_lock.locked():
            logger.info("⏭️ VERIFICATION_LOOP: previous cycle still running, skipping")
            return VerificationCycleResult()

        async with self._cycle_lock:
            started = time.monotonic()
            result = VerificationCycleResult()
            now = datetime.utcnow()
            records = await self.select_pending(now)
            if not records:
                return result

            stuck_after = timedelta(hours=Config.STUCK_TX_HOURS)
            for record in records:
                result.checked += 1
                try:
                    if record.kind == UNARMED_BURN:
                        await self.burn_ledger.arm_confirmed(record.record_id)
                        result.payouts_armed += 1
                        continue

                    receipt = await self.gateway.get_receipt(record.tx_hash)
                    if not receipt.mined:
                        result.not_mined += 1
                        age = now - record.submitted_at
                        if age > stuck_after:
                            result.stuck += 1
                            logger.warning(
                                f"🚨 ALERT STUCK_TX: {record.kind} {record.record_id} tx={record.tx_hash} "
                                f"pending for {age}"
                            )
                        continue

                    if record.kind == ESCROW_TX:
                        outcome = await self.coordinator.finalize_transaction(record.record_id, receipt)
                        if outcome == TxOutcome.SUCCESS.value:
                            result.escrow_confirmed += 1
                        elif outcome == TxOutcome.REVERTED.value:
                            result.escrow_reverted += 1
                    else:
                        status = await self.burn_ledger.finalize_burn(record.record_id, receipt)
                        if status == BurnStatus.CONFIRMED.value:
                            result.burns_confirmed += 1
                        elif status == BurnStatus.FAILED.value:
                            result.burns_failed += 1
                except Exception as e:
                    result.errors.append(f"{record.kind} {record.record_id}: {e}")
                    logger.error(f"❌ VERIFICATION_ERROR: {record.kind} {record.record_id} tx={record.tx_hash}: {e}")

            result.execution_time_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"🔍 VERIFICATION_CYCLE: {result.to_dict()}")
            return result


_verification_loop: Optional[VerificationLoop] = None


def get_verification_loop() -> VerificationLoop:
    global _verification_loop
    if _verification_loop is None:
        _verification_loop = VerificationLoop()
    return _verification_loop


async def run_verification_loop() -> Dict[str, Any]:
    """Scheduler entry point"""
    result = await get_verification_loop().run_cycle()
    return result.to_dict()
