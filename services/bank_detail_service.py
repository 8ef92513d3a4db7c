"""
Bank Detail Service
Payee bank accounts for INR payouts: validation, default selection, soft delete
"""

import logging
import re
import uuid
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update

from database import async_managed_session
from models import BankAccountKind, BankDetail
from utils.exceptions import BadInputError, NotFoundError

logger = logging.getLogger(__name__)

IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{9,18}$")


def bank_detail_to_dict(detail: BankDetail) -> Dict[str, Any]:
    """Public view; never includes the full account number"""
    return {
        "id": detail.id,
        "holder_name": detail.holder_name,
        "account_last4": detail.account_last4,
        "routing_code": detail.routing_code,
        "bank_name": detail.bank_name,
        "kind": detail.kind,
        "is_default": detail.is_default,
        "created_at": detail.created_at.isoformat() if detail.created_at else None,
    }


class BankDetailService:
    def __init__(self, session_factory: Callable = async_managed_session):
        self.session_factory = session_factory

    @staticmethod
    def _validate(holder_name: str, account_number: str, routing_code: str, bank_name: str, kind: str):
        if not holder_name or not holder_name.strip():
            raise BadInputError("Account holder name is required")
        if not bank_name or not bank_name.strip():
            raise BadInputError("Bank name is required")
        if not ACCOUNT_NUMBER_PATTERN.match(account_number or ""):
            raise BadInputError("Account number must be 9 to 18 digits")
        if not IFSC_PATTERN.match(routing_code or ""):
            raise BadInputError("Invalid IFSC code format")
        if kind not in {k.value for k in BankAccountKind}:
            raise BadInputError(f"Account type must be one of {[k.value for k in BankAccountKind]}")

    @staticmethod
    async def _clear_default(session, user_id: str):
        await session.execute(
            update(BankDetail)
            .where(BankDetail.user_id == user_id, BankDetail.is_default.is_(True))
            .values(is_default=False)
        )

    async def add_bank_detail(
        self,
        user_id: str,
        holder_name: str,
        account_number: str,
        routing_code: str,
        bank_name: str,
        kind: str = BankAccountKind.SAVINGS.value,
        is_default: bool = False,
    ) -> Dict[str, Any]:
        account_number = (account_number or "").strip()
        routing_code = (routing_code or "").strip().upper()
        self._validate(holder_name, account_number, routing_code, bank_name, kind)

        async with self.session_factory() as session:
            result = await session.execute(
                select(BankDetail).where(BankDetail.user_id == user_id, BankDetail.is_active.is_(True))
            )
            active = list(result.scalars().all())
            if any(d.account_number == account_number and d.routing_code == routing_code for d in active):
                raise BadInputError("This bank account is already added")

            make_default = is_default or not active
            if make_default:
                await self._clear_default(session, user_id)

            detail = BankDetail(
                id=str(uuid.uuid4()),
                user_id=user_id,
                holder_name=holder_name.strip(),
                account_number=account_number,
                account_last4=account_number[-4:],
                routing_code=routing_code,
                bank_name=bank_name.strip(),
                kind=kind,
                is_default=make_default,
                is_active=True,
            )
            session.add(detail)
            await session.flush()
            logger.info(f"🏦 BANK_DETAIL_ADDED: user={user_id} id={detail.id} ****{detail.account_last4} default={make_default}")
            return bank_detail_to_dict(detail)

    async def list_bank_details(self, user_id: str) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BankDetail)
                .where(BankDetail.user_id == user_id, BankDetail.is_active.is_(True))
                .order_by(BankDetail.is_default.desc(), BankDetail.created_at.desc())
            )
            return [bank_detail_to_dict(d) for d in result.scalars().all()]

    @staticmethod
    async def get_owned(session, user_id: str, bank_detail_id: str) -> BankDetail:
        result = await session.execute(
            select(BankDetail).where(
                BankDetail.id == bank_detail_id,
                BankDetail.user_id == user_id,
                BankDetail.is_active.is_(True),
            )
        )
        detail = result.scalar_one_or_none()
        if detail is None:
            raise NotFoundError("Bank detail not found")
        return detail

    @staticmethod
    async def get_default(session, user_id: str) -> Optional[BankDetail]:
        result = await session.execute(
            select(BankDetail).where(
                BankDetail.user_id == user_id,
                BankDetail.is_active.is_(True),
                BankDetail.is_default.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def set_default_bank_detail(self, user_id: str, bank_detail_id: str) -> Dict[str, Any]:
        async with self.session_factory() as session:
            detail = await self.get_owned(session, user_id, bank_detail_id)
            await self._clear_default(session, user_id)
            detail.is_default = True
            await session.flush()
            logger.info(f"🏦 BANK_DETAIL_DEFAULT: user={user_id} id={bank_detail_id}")
            return bank_detail_to_dict(detail)

    async def delete_bank_detail(self, user_id: str, bank_detail_id: str) -> Dict[str, Any]:
        """Soft delete; a deleted default hands over to the newest remaining account"""
        async with self.session_factory() as session:
            detail = await self.get_owned(session, user_id, bank_detail_id)
            was_default = detail.is_default
            detail.is_active = False
            detail.is_default = False
            await session.flush()

            promoted_id = None
            if was_default:
                result = await session.execute(
                    select(BankDetail)
                    .where(BankDetail.user_id == user_id, BankDetail.is_active.is_(True))
                    .order_by(BankDetail.created_at.desc(), BankDetail.id.desc())
                    .limit(1)
                )
                successor = result.scalar_one_or_none()
                if successor is not None:
                    successor.is_default = True
                    promoted_id = successor.id

            logger.info(f"🗑️ BANK_DETAIL_REMOVED: user={user_id} id={bank_detail_id} promoted={promoted_id}")
            return {"deleted": bank_detail_id, "new_default": promoted_id}


_bank_detail_service: Optional[BankDetailService] = None


def get_bank_detail_service() -> BankDetailService:
    global _bank_detail_service
    if _bank_detail_service is None:
        _bank_detail_service = BankDetailService()
    return _bank_detail_service
