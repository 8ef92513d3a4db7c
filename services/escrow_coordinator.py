"""
Escrow Coordinator
Per-order escrow state machine: creates escrows, drives transitions on
buyer/seller/arbitrator intent and records every on-chain attempt in the
escrow's append-only transaction log.

The mirrored status only moves when a receipt is confirmed. A submitted,
unconfirmed transition is held in pending_status so duplicate intents see it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import select

from config import Config
from database import async_managed_session
from models import Escrow, EscrowStatus, EscrowTransaction, EscrowTxKind, Order, TxOutcome
from services.atomic_lock_manager import LockOperationType, atomic_lock_manager
from utils import request_deadline
from utils.auth import Principal
from utils.escrow_state_validator import EscrowStateValidator, OrderRole
from utils.exceptions import (
    BadInputError,
    ChainError,
    DeployFailedError,
    EscrowCoreError,
    ForbiddenError,
    ReceiptTimeoutError,
    TooEarlyError,
    UnknownOrderError,
)
from utils.token_units import to_wei

logger = logging.getLogger(__name__)

# EscrowTransaction.details["recorded"] for dispute entries
DISPUTE_OFF_CHAIN = "off_chain"
DISPUTE_RAISING = "raising_on_chain"
DISPUTE_ON_CHAIN_AT_RESOLUTION = "on_chain_at_resolution"


def role_of(principal: Principal, order: Order) -> str:
    if principal.is_admin:
        return OrderRole.ARBITRATOR
    if principal.user_id == order.buyer_id:
        return OrderRole.BUYER
    if principal.user_id == order.seller_id:
        return OrderRole.SELLER
    return OrderRole.NONE


def transaction_to_dict(entry: EscrowTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "kind": entry.kind,
        "tx_hash": entry.tx_hash,
        "block_number": entry.block_number,
        "from_status": entry.from_status,
        "target_status": entry.target_status,
        "outcome": entry.outcome,
        "submitted_at": entry.submitted_at.isoformat() if entry.submitted_at else None,
        "confirmed_at": entry.confirmed_at.isoformat() if entry.confirmed_at else None,
        "error_message": entry.error_message,
        "details": entry.details,
    }


def escrow_to_dict(escrow: Escrow) -> Dict[str, Any]:
    return {
        "order_id": escrow.order_id,
        "address": escrow.address,
        "status": escrow.status,
        "pending_status": escrow.pending_status,
        "effective_status": escrow.effective_status,
        "buyer_address": escrow.buyer_address,
        "seller_address": escrow.seller_address,
        "arbitrator_address": escrow.arbitrator_address,
        "amount_wei": escrow.amount_wei,
        "needs_review": escrow.needs_review,
        "review_reason": escrow.review_reason,
        "created_at": escrow.created_at.isoformat() if escrow.created_at else None,
        "tx_log": [transaction_to_dict(t) for t in escrow.transactions],
    }


@dataclass
class TransitionResult:
    escrow: Dict[str, Any]
    tx_hash: Optional[str]
    confirmed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"escrow": self.escrow, "tx_hash": self.tx_hash, "confirmed": self.confirmed}


class EscrowCoordinator:
    """State machine driver for order escrows"""

    def __init__(
        self,
        gateway=None,
        wallets=None,
        lock_manager=None,
        session_factory: Callable = async_managed_session,
    ):
        self._gateway = gateway
        self._wallets = wallets
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

    @asynccontextmanager
    async def _order_lock(self, order_id: str):
        async with self.lock_manager.hold(
            f"escrow_order_{order_id}",
            LockOperationType.ESCROW_TRANSITION,
            resource_id=order_id,
            timeout_seconds=max(120, Config.RECEIPT_WAIT_SECONDS * 2),
        ):
            yield

    @staticmethod
    async def _load(session, order_id: str) -> Tuple[Order, Optional[Escrow]]:
        order = await session.get(Order, order_id)
        if order is None:
            raise UnknownOrderError(f"Order {order_id} not found")
        result = await session.execute(
            select(Escrow).where(Escrow.order_id == order_id).with_for_update()
        )
        return order, result.scalar_one_or_none()

    async def get_view(self, order_id: str) -> Dict[str, Any]:
        async with self.session_factory() as session:
            _, escrow = await self._load(session, order_id)
            if escrow is None:
                raise BadInputError("No escrow found for this order")
            await session.refresh(escrow, attribute_names=["transactions"])
            return escrow_to_dict(escrow)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_escrow(self, order_id: str, principal: Principal) -> Dict[str, Any]:
        """
        Deploy the order's escrow from the operator account.

        Idempotent: an order with a deployed or deploying escrow returns it.
        Besides the operator, the order's seller may create it: the seller
        lists the order and funds nothing, and the deployment is paid for and
        signed by the operator account either way.
        """
        async with self._order_lock(order_id):
            async with self.session_factory() as session:
                order, escrow = await self._load(session, order_id)
                role = role_of(principal, order)
                if role not in (OrderRole.ARBITRATOR, OrderRole.SELLER):
                    raise ForbiddenError("Only the operator or the order's seller may create its escrow")

                if escrow is not None and (escrow.address or self._has_pending(escrow, EscrowTxKind.CREATED)):
                    logger.info(f"🔄 ESCROW_EXISTS: order={order_id} address={escrow.address}")
                    return {"created": False, "escrow": escrow_to_dict(escrow)}

                buyer_id, seller_id, total = order.buyer_id, order.seller_id, order.total_amount

            amount_wei = to_wei(total)
            if amount_wei <= 0:
                raise BadInputError("Order total must be positive")
            buyer_addr = await self.wallets.get_or_create(buyer_id)
            seller_addr = await self.wallets.get_or_create(seller_id)
            arbitrator_addr = self.gateway.operator_address

            tx_hash = await self.gateway.send_deploy_escrow(buyer_addr, seller_addr, arbitrator_addr, amount_wei)

            async with self.session_factory() as session:
                _, escrow = await self._load(session, order_id)
                if escrow is None:
                    escrow = Escrow(
                        order_id=order_id,
                        status=EscrowStatus.LOCKED.value,
                        buyer_address=buyer_addr,
                        seller_address=seller_addr,
                        arbitrator_address=arbitrator_addr,
                        amount_wei=str(amount_wei),
                    )
                    session.add(escrow)
                    await session.flush()
                entry = EscrowTransaction(
                    escrow_id=escrow.id,
                    kind=EscrowTxKind.CREATED.value,
                    tx_hash=tx_hash,
                    from_status=None,
                    target_status=EscrowStatus.LOCKED.value,
                    actor_id=principal.user_id,
                    outcome=TxOutcome.PENDING.value,
                    details={"amount_wei": str(amount_wei)},
                )
                session.add(entry)
                await session.flush()
                entry_id = entry.id

            logger.info(f"📝 ESCROW_COORDINATOR: deploy submitted order={order_id} tx={tx_hash}")

        try:
            result = await self._await_confirmation(order_id, entry_id, tx_hash)
        except ChainError as e:
            raise DeployFailedError(
                f"Escrow deployment for order {order_id} reverted", details=e.details, cause=e
            ) from e
        view = result.escrow
        if not view.get("address"):
            raise DeployFailedError(
                f"Escrow deployment for order {order_id} did not produce an escrow", details={"escrow": view}
            )
        logger.info(f"✅ ESCROW_COORDINATOR: Created escrow {view['address']} for order {order_id}")
        return {"created": True, "escrow": view, "tx_hash": tx_hash}

    @staticmethod
    def _has_pending(escrow: Escrow, kind: EscrowTxKind) -> bool:
        return any(t.kind == kind.value and t.outcome == TxOutcome.PENDING.value for t in escrow.transactions)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def confirm_delivery(self, order_id: str, principal: Principal) -> TransitionResult:
        return await self.transition(order_id, principal, EscrowTxKind.CONFIRM_DELIVERY)

    async def release(self, order_id: str, principal: Principal) -> TransitionResult:
        return await self.transition(order_id, principal, EscrowTxKind.RELEASE)

    async def dispute(self, order_id: str, principal: Principal) -> TransitionResult:
        return await self.transition(order_id, principal, EscrowTxKind.DISPUTE)

    async def claim_timeout(self, order_id: str, principal: Principal) -> TransitionResult:
        return await self.transition(order_id, principal, EscrowTxKind.TIMEOUT_CLAIM)

    async def transition(self, order_id: str, principal: Principal, kind: EscrowTxKind) -> TransitionResult:
        """validate -> submit -> record under the order lock; wait for the receipt after releasing it"""
        method = {
            EscrowTxKind.CONFIRM_DELIVERY: "confirm_delivery",
            EscrowTxKind.RELEASE: "release",
            EscrowTxKind.DISPUTE: "dispute",
            EscrowTxKind.TIMEOUT_CLAIM: "claim_timeout",
        }.get(kind)
        if method is None:
            raise BadInputError(f"{kind.value} is not a participant transition")

        async with self._order_lock(order_id):
            async with self.session_factory() as session:
                order, escrow = await self._load(session, order_id)
                if escrow is None:
                    raise BadInputError("No escrow found for this order")
                EscrowStateValidator.authorize(kind, role_of(principal, order))
                effective = EscrowStatus(escrow.effective_status)
                rule = EscrowStateValidator.check_intent(kind, effective, details={"escrow": escrow_to_dict(escrow)})
                if not escrow.address:
                    raise TooEarlyError("Escrow deployment not yet confirmed", details={"escrow": escrow_to_dict(escrow)})
                escrow_id, escrow_address = escrow.id, escrow.address
                target = next(iter(rule.to_statuses))

            if kind == EscrowTxKind.TIMEOUT_CLAIM:
                await self._require_timeout_elapsed(escrow_address)

            if kind == EscrowTxKind.DISPUTE and not Config.DISPUTE_ON_CHAIN:
                return await self._record_offchain_dispute(order_id, escrow_id, principal, effective)

            tx_hash, entry_id = await asyncio.shield(self._submit_and_record(
                lambda: self.gateway.send_user_tx(principal.user_id, escrow_address, method),
                escrow_id,
                kind,
                effective,
                target,
                principal.user_id,
            ))

            logger.info(
                f"📝 ESCROW_COORDINATOR: {kind.value} submitted order={order_id} "
                f"{effective.value} -> {target.value} tx={tx_hash}"
            )

        return await self._await_confirmation(order_id, entry_id, tx_hash)

    async def _submit_and_record(
        self,
        send: Callable,
        escrow_id: int,
        kind: EscrowTxKind,
        effective: EscrowStatus,
        target: EscrowStatus,
        actor_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, int]:
        """
        Broadcast and write the pending tx_log entry as one unit.

        Callers shield this so a cancelled request cannot leave a broadcast
        transaction without its log entry.
        """
        tx_hash = await send()
        async with self.session_factory() as session:
            escrow = await session.get(Escrow, escrow_id)
            entry = EscrowTransaction(
                escrow_id=escrow_id,
                kind=kind.value,
                tx_hash=tx_hash,
                from_status=effective.value,
                target_status=target.value,
                actor_id=actor_id,
                outcome=TxOutcome.PENDING.value,
                details=details,
            )
            session.add(entry)
            escrow.pending_status = target.value
            if kind == EscrowTxKind.DISPUTE:
                escrow.disputed_by = actor_id
            await session.flush()
            return tx_hash, entry.id

    async def _require_timeout_elapsed(self, escrow_address: str):
        state = await self.gateway.escrow_state(escrow_address)
        now_chain_ts = await self.gateway.chain_timestamp()
        eligible_at = state.created_at_chain_ts + Config.ESCROW_TIMEOUT_SECONDS
        if state.buyer_confirmed:
            raise TooEarlyError("Buyer has confirmed delivery; timeout claim is not available")
        if eligible_at > now_chain_ts:
            raise TooEarlyError(
                f"Timeout claim available in {eligible_at - now_chain_ts}s",
                details={"eligible_at_chain_ts": eligible_at, "chain_ts": now_chain_ts},
            )

    async def _record_offchain_dispute(
        self, order_id: str, escrow_id: int, principal: Principal, effective: EscrowStatus
    ) -> TransitionResult:
        async with self.session_factory() as session:
            escrow = await session.get(Escrow, escrow_id)
            session.add(EscrowTransaction(
                escrow_id=escrow_id,
                kind=EscrowTxKind.DISPUTE.value,
                tx_hash=None,
                from_status=effective.value,
                target_status=EscrowStatus.DISPUTED.value,
                actor_id=principal.user_id,
                outcome=TxOutcome.SUCCESS.value,
                confirmed_at=datetime.utcnow(),
                details={"recorded": DISPUTE_OFF_CHAIN},
            ))
            escrow.status = EscrowStatus.DISPUTED.value
            escrow.disputed_by = principal.user_id

        logger.info(f"⚖️ ESCROW_COORDINATOR: dispute recorded off-chain order={order_id} by={principal.user_id}")
        return TransitionResult(escrow=await self.get_view(order_id), tx_hash=None, confirmed=True)

    async def resolve(self, order_id: str, principal: Principal, winner: str, notes: Optional[str] = None) -> TransitionResult:
        """
        Arbitrator decision on a disputed escrow.

        A dispute recorded off-chain is first raised on chain with the disputing
        participant's wallet. That transaction is confirmed outside the order
        lock, then the lock is taken again to submit the resolution.
        """
        if winner not in (OrderRole.BUYER, OrderRole.SELLER):
            raise BadInputError("Winner must be 'buyer' or 'seller'")

        dispute_tx = await self._raise_dispute_on_chain(order_id, principal)
        if dispute_tx is not None:
            await self._confirm_dispute_on_chain(order_id, *dispute_tx)

        async with self._order_lock(order_id):
            async with self.session_factory() as session:
                escrow, effective = await self._load_for_resolution(session, order_id, principal)
                raising = self._offchain_dispute(escrow)
                if raising is not None and raising.tx_hash:
                    raise TooEarlyError(
                        "On-chain dispute for this order is not yet confirmed",
                        details={"tx_hash": raising.tx_hash},
                    )
                escrow_id, escrow_address = escrow.id, escrow.address
                winner_address = escrow.seller_address if winner == OrderRole.SELLER else escrow.buyer_address
                target = EscrowStatus.COMPLETE if winner == OrderRole.SELLER else EscrowStatus.REFUNDED

            tx_hash, entry_id = await asyncio.shield(self._submit_and_record(
                lambda: self.gateway.send_operator_tx(escrow_address, "resolve_dispute", winner_address),
                escrow_id,
                EscrowTxKind.RESOLVE,
                effective,
                target,
                principal.user_id,
                details={"winner": winner, "winner_address": winner_address, "notes": notes},
            ))

            logger.info(f"⚖️ ESCROW_COORDINATOR: resolve submitted order={order_id} winner={winner} tx={tx_hash}")

        return await self._await_confirmation(order_id, entry_id, tx_hash)

    async def _load_for_resolution(self, session, order_id: str, principal: Principal) -> Tuple[Escrow, EscrowStatus]:
        order, escrow = await self._load(session, order_id)
        if escrow is None:
            raise BadInputError("No escrow found for this order")
        EscrowStateValidator.authorize(EscrowTxKind.RESOLVE, role_of(principal, order))
        effective = EscrowStatus(escrow.effective_status)
        EscrowStateValidator.check_intent(EscrowTxKind.RESOLVE, effective, details={"escrow": escrow_to_dict(escrow)})
        if not escrow.address:
            raise TooEarlyError("Escrow deployment not yet confirmed")
        return escrow, effective

    @staticmethod
    def _offchain_dispute(escrow: Escrow) -> Optional[EscrowTransaction]:
        """Latest dispute entry not yet confirmed on chain, if any"""
        return next(
            (t for t in reversed(escrow.transactions)
             if t.kind == EscrowTxKind.DISPUTE.value
             and (t.details or {}).get("recorded") in (DISPUTE_OFF_CHAIN, DISPUTE_RAISING)),
            None,
        )

    async def _raise_dispute_on_chain(self, order_id: str, principal: Principal) -> Optional[Tuple[int, str]]:
        """
        Bring the contract to Disputed before the arbitrator resolves an off-chain dispute.

        Returns (entry_id, tx_hash) of the dispute transaction to confirm, or
        None when the contract needs no dispute.
        """
        async with self._order_lock(order_id):
            async with self.session_factory() as session:
                escrow, _ = await self._load_for_resolution(session, order_id, principal)
                entry = self._offchain_dispute(escrow)
                if entry is None:
                    return None
                if entry.tx_hash:
                    return entry.id, entry.tx_hash
                entry_id, escrow_address, disputed_by = entry.id, escrow.address, escrow.disputed_by

            state = await self.gateway.escrow_state(escrow_address)
            if state.status == EscrowStatus.DISPUTED:
                return None
            if state.status != EscrowStatus.LOCKED or not disputed_by:
                raise ChainError(
                    f"Escrow {escrow_address} is {state.status.value} on chain; cannot raise dispute",
                    details={"on_chain": state.to_dict()},
                )

            async def send_and_record() -> str:
                sent = await self.gateway.send_user_tx(disputed_by, escrow_address, "dispute")
                async with self.session_factory() as session:
                    entry = await session.get(EscrowTransaction, entry_id)
                    entry.tx_hash = sent
                    entry.details = {**(entry.details or {}), "recorded": DISPUTE_RAISING}
                return sent

            tx_hash = await asyncio.shield(send_and_record())

        logger.info(f"⚖️ ESCROW_COORDINATOR: dispute raised on-chain {escrow_address} tx={tx_hash}")
        return entry_id, tx_hash

    async def _confirm_dispute_on_chain(self, order_id: str, entry_id: int, tx_hash: str):
        try:
            receipt = await self.gateway.wait_for_receipt(
                tx_hash, timeout=request_deadline.bounded_wait(Config.RECEIPT_WAIT_SECONDS)
            )
        except ReceiptTimeoutError:
            view = await self.get_view(order_id)
            logger.warning(f"⏳ ESCROW_COORDINATOR: dispute receipt wait expired order={order_id} tx={tx_hash}")
            raise ReceiptTimeoutError(tx_hash, details={"escrow": view})

        async with self.session_factory() as session:
            entry = await session.get(EscrowTransaction, entry_id)
            if receipt.success:
                entry.block_number = receipt.block_number
                entry.details = {**(entry.details or {}), "recorded": DISPUTE_ON_CHAIN_AT_RESOLUTION}
            else:
                # back to off-chain so the next resolution attempt raises it again
                entry.tx_hash = None
                entry.details = {**(entry.details or {}), "recorded": DISPUTE_OFF_CHAIN, "reverted_tx": tx_hash}

        if not receipt.success:
            raise ChainError(f"On-chain dispute reverted: {tx_hash}", details={"tx_hash": tx_hash})

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _await_confirmation(self, order_id: str, entry_id: int, tx_hash: str) -> TransitionResult:
        try:
            receipt = await self.gateway.wait_for_receipt(
                tx_hash, timeout=request_deadline.bounded_wait(Config.RECEIPT_WAIT_SECONDS)
            )
        except ReceiptTimeoutError:
            view = await self.get_view(order_id)
            logger.warning(f"⏳ ESCROW_COORDINATOR: receipt wait expired order={order_id} tx={tx_hash}")
            raise ReceiptTimeoutError(tx_hash, details={"escrow": view})

        outcome = await self.finalize_transaction(entry_id, receipt)
        view = await self.get_view(order_id)
        if outcome == TxOutcome.REVERTED.value:
            raise ChainError("Transaction reverted on-chain", details={"escrow": view, "tx_hash": tx_hash})
        return TransitionResult(escrow=view, tx_hash=tx_hash, confirmed=outcome == TxOutcome.SUCCESS.value)

    async def finalize_transaction(self, entry_id: int, receipt) -> str:
        """
        Apply a mined receipt to its tx_log entry and the escrow mirror.

        Idempotent: an entry that is no longer pending is left untouched.
        Returns the entry's outcome after the call.
        """
        async with self.session_factory() as session:
            entry = await session.get(EscrowTransaction, entry_id)
            if entry is None:
                raise BadInputError(f"Unknown escrow transaction {entry_id}")
            escrow = await session.get(Escrow, entry.escrow_id)
            order_id = escrow.order_id

        if not receipt.mined:
            return TxOutcome.PENDING.value

        async with self._order_lock(order_id):
            async with self.session_factory() as session:
                entry = await session.get(EscrowTransaction, entry_id, with_for_update=True)
                escrow = await session.get(Escrow, entry.escrow_id, with_for_update=True)
                if entry.outcome != TxOutcome.PENDING.value:
                    return entry.outcome

                entry.block_number = receipt.block_number
                entry.confirmed_at = datetime.utcnow()

                if receipt.success and entry.kind == EscrowTxKind.CREATED.value:
                    address = self.gateway.parse_escrow_created(receipt)
                    if not address:
                        entry.outcome = TxOutcome.REVERTED.value
                        entry.error_message = "NewEscrowCreated event missing from receipt"
                        escrow.needs_review = True
                        escrow.review_reason = entry.error_message
                        logger.error(f"🚨 ALERT ESCROW_DEPLOY_NO_EVENT: order={order_id} tx={entry.tx_hash}")
                        return entry.outcome
                    escrow.address = address

                if receipt.success:
                    entry.outcome = TxOutcome.SUCCESS.value
                    target = EscrowStatus(entry.target_status)
                    valid, reason = EscrowStateValidator.validate_transition(
                        EscrowStatus(escrow.status), target, escrow_ref=order_id
                    )
                    if valid:
                        escrow.status = target.value
                    else:
                        escrow.needs_review = True
                        escrow.review_reason = f"Confirmed {entry.kind} does not follow mirror: {reason}"
                        logger.error(f"🚨 ALERT ESCROW_DIVERGENCE: order={order_id} {escrow.review_reason}")
                    if escrow.pending_status == entry.target_status:
                        escrow.pending_status = None
                    logger.info(
                        f"✅ ESCROW_CONFIRMED: order={order_id} {entry.kind} -> {escrow.status} "
                        f"block={receipt.block_number}"
                    )
                else:
                    entry.outcome = TxOutcome.REVERTED.value
                    entry.error_message = "Transaction reverted on-chain"
                    if entry.kind == EscrowTxKind.CREATED.value:
                        escrow.needs_review = True
                        escrow.review_reason = "Escrow deployment reverted"
                    if escrow.pending_status == entry.target_status:
                        escrow.pending_status = None
                    logger.error(
                        f"🚨 ALERT ESCROW_TX_REVERTED: order={order_id} {entry.kind} tx={entry.tx_hash} "
                        f"mirror stays {escrow.status}"
                    )

                outcome = entry.outcome
                check_chain = outcome == TxOutcome.SUCCESS.value and escrow.address and not escrow.pending_status
                escrow_id, address = escrow.id, escrow.address

        if check_chain:
            await self._check_divergence(escrow_id, address)
        return outcome

    async def _check_divergence(self, escrow_id: int, address: str):
        """Compare the confirmed mirror with the contract; flag for review, never roll back"""
        try:
            state = await self.gateway.escrow_state(address)
        except EscrowCoreError as e:
            logger.warning(f"⚠️ ESCROW_DIVERGENCE_CHECK_SKIPPED: {address}: {e.message}")
            return

        async with self.session_factory() as session:
            escrow = await session.get(Escrow, escrow_id)
            if escrow.pending_status:
                return
            reasons = []
            if state.status.value != escrow.status:
                reasons.append(f"contract is {state.status.value}, mirror is {escrow.status}")
            if EscrowStateValidator.is_terminal_state(EscrowStatus(escrow.status)) and state.balance_wei != 0:
                reasons.append(f"terminal escrow still holds {state.balance_wei} wei")
            if reasons:
                escrow.needs_review = True
                escrow.review_reason = "; ".join(reasons)
                logger.error(f"🚨 ALERT ESCROW_DIVERGENCE: order={escrow.order_id} {escrow.review_reason}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_escrow(self, order_id: str, principal: Principal) -> Dict[str, Any]:
        async with self.session_factory() as session:
            order, escrow = await self._load(session, order_id)
            if role_of(principal, order) == OrderRole.NONE:
                raise ForbiddenError("Only the order's buyer, seller or an admin may view its escrow")
            if escrow is None:
                raise BadInputError("No escrow found for this order")
            view = escrow_to_dict(escrow)

        on_chain = None
        if view["address"]:
            try:
                on_chain = (await self.gateway.escrow_state(view["address"])).to_dict()
            except EscrowCoreError as e:
                logger.warning(f"⚠️ ESCROW_ONCHAIN_READ_FAILED: order={order_id}: {e.message}")

        explorer_url = None
        if Config.BLOCK_EXPLORER_URL and view["address"]:
            explorer_url = f"{Config.BLOCK_EXPLORER_URL.rstrip('/')}/address/{view['address']}"

        return {"escrow": view, "on_chain": on_chain, "explorer_url": explorer_url}


_coordinator_instance: Optional[EscrowCoordinator] = None


def get_escrow_coordinator() -> EscrowCoordinator:
    global _coordinator_instance
    if _coordinator_instance is None:
        _coordinator_instance = EscrowCoordinator()
    return _coordinator_instance
