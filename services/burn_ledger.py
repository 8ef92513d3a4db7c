"""
Burn Ledger
Records token burns that back fiat payout claims.

A burn moves pending -> submitted -> confirmed | failed. Failed records are
never resubmitted; a retry creates a new record pointing at the failed one.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select

from database import async_managed_session
from models import BurnRecord, BurnStatus
from services.atomic_lock_manager import LockOperationType, atomic_lock_manager
from utils.exceptions import BadInputError, EscrowCoreError, ForbiddenError, NotFoundError
from utils.token_units import from_wei, usd_to_token_units

logger = logging.getLogger(__name__)


def burn_to_dict(burn: BurnRecord) -> Dict[str, Any]:
    return {
        "id": burn.id,
        "user_id": burn.user_id,
        "wallet_address": burn.wallet_address,
        "amount_usd": str(burn.amount_usd),
        "amount_token": burn.amount_token,
        "bank_detail_id": burn.bank_detail_id,
        "status": burn.status,
        "tx_hash": burn.tx_hash,
        "block_number": burn.block_number,
        "error_message": burn.error_message,
        "retry_of_id": burn.retry_of_id,
        "linked_payout_id": burn.linked_payout_id,
        "created_at": burn.created_at.isoformat() if burn.created_at else None,
        "submitted_at": burn.submitted_at.isoformat() if burn.submitted_at else None,
        "verified_at": burn.verified_at.isoformat() if burn.verified_at else None,
    }


class BurnLedger:
    def __init__(self, gateway=None, wallets=None, pipeline=None, lock_manager=None,
                 session_factory: Callable = async_managed_session):
        self._gateway = gateway
        self._wallets = wallets
        self._pipeline = pipeline
        self.lock_manager = lock_manager or atomic_lock_manager
        self.session_factory = session_factory

    @property
    def gateway(self):
        if self._gateway is None:
            from services.chain_gateway import get_chain_gateway
            self._gateway = get_chain_gateway()
        return self._gateway

    @property
    def wallets(self):
        if self._wallets is None:
            from services.wallet_registry import get_wallet_registry
            self._wallets = get_wallet_registry()
        return self._wallets

    @property
    def pipeline(self):
        if self._pipeline is None:
            from services.payout_pipeline import get_payout_pipeline
            self._pipeline = get_payout_pipeline()
        return self._pipeline

    async def get_balance(self, user_id: str) -> Dict[str, Any]:
        address = await self.wallets.address_of(user_id)
        if address is None:
            return {"address": None, "balance_token": "0", "balance_usd": "0"}
        balance = await self.gateway.token_balance(address)
        return {"address": address, "balance_token": str(balance), "balance_usd": str(from_wei(balance))}

    async def request_burn(
        self,
        user_id: str,
        amount_usd: Decimal,
        bank_detail_id: Optional[str] = None,
        retry_of_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a pending record, submit the burn from the user's wallet, mark it submitted"""
        amount_usd = Decimal(str(amount_usd)).quantize(Decimal("0.01"))
        if amount_usd <= 0:
            raise BadInputError("Burn amount must be positive")
        amount_token = usd_to_token_units(amount_usd)

        address = await self.wallets.require_address(user_id)
        balance = await self.gateway.token_balance(address)
        if balance < amount_token:
            raise BadInputError(
                f"Insufficient balance. You have {from_wei(balance)} tokens",
                details={"balance_token": str(balance), "requested_token": str(amount_token)},
            )

        burn_id = str(uuid.uuid4())
        async with self.session_factory() as session:
            session.add(BurnRecord(
                id=burn_id,
                user_id=user_id,
                wallet_address=address,
                amount_token=str(amount_token),
                amount_usd=amount_usd,
                bank_detail_id=bank_detail_id,
                status=BurnStatus.PENDING.value,
                retry_of_id=retry_of_id,
            ))

        try:
            tx_hash = await self.gateway.send_burn(user_id, amount_token)
        except EscrowCoreError as e:
            await self._mark_failed(burn_id, e.message)
            logger.error(f"❌ BURN_SUBMIT_FAILED: burn={burn_id} user={user_id}: {e.code} {e.message}")
            raise

        async with self.session_factory() as session:
            burn = await session.get(BurnRecord, burn_id)
            burn.status = BurnStatus.SUBMITTED.value
            burn.tx_hash = tx_hash
            burn.submitted_at = datetime.utcnow()
            await session.flush()
            logger.info(f"🔥 BURN_SUBMITTED: burn={burn_id} user={user_id} usd={amount_usd} tx={tx_hash}")
            return burn_to_dict(burn)

    async def _mark_failed(self, burn_id: str, reason: str, block_number: Optional[int] = None):
        async with self.session_factory() as session:
            burn = await session.get(BurnRecord, burn_id)
            burn.status = BurnStatus.FAILED.value
            burn.error_message = reason
            if block_number is not None:
                burn.block_number = block_number

    async def retry_burn(self, user_id: str, burn_id: str) -> Dict[str, Any]:
        async with self.session_factory() as session:
            burn = await session.get(BurnRecord, burn_id)
            if burn is None or burn.user_id != user_id:
                raise NotFoundError("Burn record not found")
            if burn.status != BurnStatus.FAILED.value:
                raise BadInputError(f"Only failed burns can be retried (status is {burn.status})")
            amount_usd, bank_detail_id = burn.amount_usd, burn.bank_detail_id

        logger.info(f"🔁 BURN_RETRY: user={user_id} retrying {burn_id}")
        return await self.request_burn(user_id, amount_usd, bank_detail_id=bank_detail_id, retry_of_id=burn_id)

    async def finalize_burn(self, burn_id: str, receipt) -> str:
        """
        Apply a mined receipt to a submitted burn; arms the payout once confirmed.

        Idempotent: a confirmed or failed burn is left untouched.
        """
        if not receipt.mined:
            async with self.session_factory() as session:
                burn = await session.get(BurnRecord, burn_id)
                return burn.status

        async with self.lock_manager.hold(
            f"burn_verify_{burn_id}", LockOperationType.BURN_VERIFICATION, resource_id=burn_id
        ):
            async with self.session_factory() as session:
                burn = await session.get(BurnRecord, burn_id)
                if burn.status not in (BurnStatus.PENDING.value, BurnStatus.SUBMITTED.value):
                    return burn.status
                tx_hash, amount_token, wallet_address = burn.tx_hash, int(burn.amount_token), burn.wallet_address

            if not receipt.success:
                await self._mark_failed(burn_id, "Transaction reverted on-chain", receipt.block_number)
                logger.error(f"🚨 ALERT BURN_REVERTED: burn={burn_id} tx={tx_hash}")
                return BurnStatus.FAILED.value

            verification = await self.gateway.verify_burn(tx_hash, amount_token, wallet_address)
            if not verification.verified:
                await self._mark_failed(
                    burn_id,
                    f"Transaction succeeded but no valid burn event found: {verification.reason}",
                    receipt.block_number,
                )
                logger.error(f"🚨 ALERT BURN_UNVERIFIED: burn={burn_id} tx={tx_hash}: {verification.reason}")
                return BurnStatus.FAILED.value

            async with self.session_factory() as session:
                burn = await session.get(BurnRecord, burn_id)
                burn.status = BurnStatus.CONFIRMED.value
                burn.block_number = verification.block_number or receipt.block_number
                burn.verified_at = datetime.utcnow()
                burn.error_message = None
            logger.info(f"✅ BURN_CONFIRMED: burn={burn_id} block={receipt.block_number}")

        await self.arm_confirmed(burn_id)
        return BurnStatus.CONFIRMED.value

    async def arm_confirmed(self, burn_id: str) -> Dict[str, Any]:
        """
        Hand a confirmed burn to the payout pipeline.

        Safe to repeat: a burn that already has its payout returns that payout.
        The verification loop calls this for confirmed burns left unlinked when
        arming failed after confirmation.
        """
        return await self.pipeline.arm(burn_id)

    async def verify_now(self, burn_id: str, user_id: str, is_admin: bool = False) -> Dict[str, Any]:
        """On-demand check of one burn; also arms a confirmed burn that never got its payout"""
        async with self.session_factory() as session:
            burn = await session.get(BurnRecord, burn_id)
            if burn is None:
                raise NotFoundError("Burn record not found")
            if burn.user_id != user_id and not is_admin:
                raise ForbiddenError("Not your burn record")
            status, tx_hash, linked = burn.status, burn.tx_hash, burn.linked_payout_id

        if status == BurnStatus.CONFIRMED.value and linked is None:
            await self.arm_confirmed(burn_id)
        elif status in (BurnStatus.PENDING.value, BurnStatus.SUBMITTED.value) and tx_hash:
            receipt = await self.gateway.get_receipt(tx_hash)
            await self.finalize_burn(burn_id, receipt)

        return await self.get_burn(burn_id)

    async def get_burn(self, burn_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        async with self.session_factory() as session:
            burn = await session.get(BurnRecord, burn_id)
            if burn is None or (user_id is not None and burn.user_id != user_id):
                raise NotFoundError("Burn record not found")
            return burn_to_dict(burn)

    async def list_burns(self, user_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        page, limit = max(1, page), min(max(1, limit), 100)
        async with self.session_factory() as session:
            total = (await session.execute(
                select(func.count()).select_from(BurnRecord).where(BurnRecord.user_id == user_id)
            )).scalar_one()
            result = await session.execute(
                select(BurnRecord)
                .where(BurnRecord.user_id == user_id)
                .order_by(BurnRecord.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return {
                "burns": [burn_to_dict(b) for b in result.scalars().all()],
                "pagination": {"page": page, "limit": limit, "total": total},
            }


_burn_ledger: Optional[BurnLedger] = None


def get_burn_ledger() -> BurnLedger:
    global _burn_ledger
    if _burn_ledger is None:
        _burn_ledger = BurnLedger()
    return _burn_ledger
