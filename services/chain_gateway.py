"""
Chain Gateway
Typed wrapper over the JSON-RPC node: contract reads, transaction assembly,
signing, nonce handling, receipt polling and event decoding.

Holds the operator account, which owns the escrow factory, arbitrates
disputes and pays gas for user wallets. Every operator-signed transaction is
serialised through one lock because the operator has a single nonce sequence.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_CEILING
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from config import Config
from models import EscrowStatus
from services.contract_abis import ESCROW_ABI, ESCROW_FACTORY_ABI, TOKEN_ABI
from utils.exceptions import (
    BadInputError,
    ChainError,
    EscrowCoreError,
    NonceConflictError,
    ReceiptTimeoutError,
)

logger = logging.getLogger(__name__)

NATIVE_TRANSFER_GAS = 21000

USER_METHODS = {
    "confirm_delivery": "confirmDelivery",
    "release": "releaseFunds",
    "dispute": "raiseDispute",
    "claim_timeout": "claimFundsAfterTimeout",
}

OPERATOR_METHODS = {
    "resolve_dispute": "resolveDispute",
}

TRANSIENT_RPC_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    ConnectionError,
    TimeoutError,
)


@dataclass
class ReceiptInfo:
    mined: bool
    success: Optional[bool] = None
    block_number: Optional[int] = None
    logs: List[Any] = field(default_factory=list)
    raw: Any = None


@dataclass
class EscrowChainState:
    buyer: str
    seller: str
    arbitrator: str
    amount: int
    state: int
    buyer_confirmed: bool
    balance_wei: int
    created_at_chain_ts: int

    @property
    def status(self) -> EscrowStatus:
        return EscrowStatus.from_contract_state(self.state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buyer": self.buyer,
            "seller": self.seller,
            "arbitrator": self.arbitrator,
            "amount": str(self.amount),
            "state": self.state,
            "status": self.status.value,
            "buyer_confirmed": self.buyer_confirmed,
            "balance_wei": str(self.balance_wei),
            "created_at_chain_ts": self.created_at_chain_ts,
        }


@dataclass
class BurnVerification:
    verified: bool
    block_number: Optional[int] = None
    reason: Optional[str] = None


class RpcTokenBucket:
    """Caps concurrent in-flight RPC calls and their sustained rate"""

    def __init__(self, capacity: int, rate_per_second: float):
        self.capacity = max(1, capacity)
        self.rate = max(0.1, rate_per_second)
        self._slots = asyncio.Semaphore(self.capacity)
        self._tokens = float(self.capacity)
        self._updated = time.monotonic()
        self._refill_lock = asyncio.Lock()

    async def _take_token(self):
        async with self._refill_lock:
            while True:
                now = time.monotonic()
                self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
                self._updated = now
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self.rate)

    async def __aenter__(self):
        await self._slots.acquire()
        try:
            await self._take_token()
        except BaseException:
            self._slots.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._slots.release()
        return False


def _checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


def _is_nonce_too_low(error: Exception) -> bool:
    return "nonce too low" in str(error).lower()


class ChainGateway:
    """Async facade over a synchronous web3 client"""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        operator_secret: Optional[str] = None,
        factory_address: Optional[str] = None,
        token_address: Optional[str] = None,
        wallets=None,
        gas_subsidizer=None,
        w3: Optional[Web3] = None,
    ):
        rpc_url = rpc_url or Config.RPC_URL
        operator_secret = operator_secret or Config.OPERATOR_SECRET
        factory_address = factory_address or Config.FACTORY_ADDRESS
        token_address = token_address or Config.TOKEN_ADDRESS

        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": Config.RPC_REQUEST_TIMEOUT}))
        self._operator = Account.from_key(operator_secret) if operator_secret else None
        self.factory = (
            self.w3.eth.contract(address=_checksum(factory_address), abi=ESCROW_FACTORY_ABI)
            if factory_address else None
        )
        self.token = (
            self.w3.eth.contract(address=_checksum(token_address), abi=TOKEN_ABI)
            if token_address else None
        )
        self.wallets = wallets
        self.gas_subsidizer = gas_subsidizer
        self._bucket = RpcTokenBucket(Config.RPC_MAX_IN_FLIGHT, Config.RPC_RATE_PER_SECOND)
        self._operator_lock = asyncio.Lock()
        self._chain_id = Config.CHAIN_ID

        if self._operator is None:
            logger.warning("⚠️ CHAIN_GATEWAY: OPERATOR_SECRET not configured - escrow writes disabled")
        else:
            logger.info(f"✅ CHAIN_GATEWAY: operator {self.operator_address}")

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def is_initialized(self) -> bool:
        return self._operator is not None and self.factory is not None

    @property
    def operator_address(self) -> str:
        if self._operator is None:
            raise ChainError("Operator account is not configured")
        return self._operator.address.lower()

    async def _rpc(self, func: Callable, *args, **kwargs) -> Any:
        """Run a blocking web3 call in a worker thread; one immediate retry on transient errors"""
        for attempt in range(2):
            async with self._bucket:
                try:
                    return await asyncio.to_thread(func, *args, **kwargs)
                except TRANSIENT_RPC_ERRORS as e:
                    if attempt == 0:
                        logger.warning(f"⚠️ RPC_TRANSIENT: {type(e).__name__} - retrying once")
                        continue
                    raise ChainError(f"RPC unreachable: {e}", cause=e) from e

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._rpc(lambda: self.w3.eth.chain_id))
        return self._chain_id

    async def gas_price(self) -> int:
        return int(await self._rpc(lambda: self.w3.eth.gas_price))

    async def native_balance(self, address: str) -> int:
        return int(await self._rpc(self.w3.eth.get_balance, _checksum(address)))

    async def token_balance(self, address: str) -> int:
        if self.token is None:
            raise ChainError("TOKEN_ADDRESS is not configured")
        return int(await self._rpc(self.token.functions.balanceOf(_checksum(address)).call))

    async def chain_timestamp(self) -> int:
        block = await self._rpc(self.w3.eth.get_block, "latest")
        return int(block["timestamp"])

    async def pending_nonce(self, address: str) -> int:
        return int(await self._rpc(self.w3.eth.get_transaction_count, _checksum(address), "pending"))

    def _escrow_contract(self, escrow_address: str):
        return self.w3.eth.contract(address=_checksum(escrow_address), abi=ESCROW_ABI)

    async def _estimate_gas(self, fn_call, sender: str) -> int:
        try:
            estimate = await self._rpc(fn_call.estimate_gas, {"from": _checksum(sender)})
        except ContractLogicError as e:
            raise ChainError(f"Contract rejected the call: {e}", cause=e) from e
        except (ValueError, Web3Exception) as e:
            raise ChainError(f"Gas estimation failed: {e}", cause=e) from e
        return int(estimate)

    @staticmethod
    def _gas_limit(estimate: int) -> int:
        return int((Decimal(estimate) * Config.GAS_LIMIT_MULTIPLIER).to_integral_value(rounding=ROUND_CEILING))

    async def _estimate_gas_limit(self, fn_call, sender: str) -> int:
        return self._gas_limit(await self._estimate_gas(fn_call, sender))

    async def _build_and_send(
        self,
        sender: str,
        gas_limit: int,
        sign: Callable[[Dict[str, Any]], Awaitable[Any]],
        fn_call=None,
        to: Optional[str] = None,
        value: int = 0,
    ) -> str:
        """Assemble, sign and broadcast; refreshes the nonce once on 'nonce too low'"""
        gas_price = await self.gas_price()
        chain_id = await self.chain_id()

        for attempt in range(2):
            nonce = await self.pending_nonce(sender)
            tx = {
                "from": _checksum(sender),
                "nonce": nonce,
                "gas": gas_limit,
                "gasPrice": gas_price,
                "chainId": chain_id,
            }
            if fn_call is not None:
                tx = await self._rpc(fn_call.build_transaction, tx)
            else:
                tx.update({"to": _checksum(to), "value": value})

            signed = await sign(tx)
            try:
                tx_hash = await self._rpc(self.w3.eth.send_raw_transaction, signed.raw_transaction)
                return Web3.to_hex(tx_hash)
            except (ValueError, Web3Exception) as e:
                if _is_nonce_too_low(e):
                    if attempt == 0:
                        logger.warning(f"⚠️ NONCE_TOO_LOW: sender={sender} nonce={nonce} - refreshing")
                        continue
                    raise NonceConflictError(f"Nonce conflict for {sender} after refresh", cause=e) from e
                raise ChainError(f"Transaction broadcast failed: {e}", cause=e) from e

        raise NonceConflictError(f"Nonce conflict for {sender}")

    async def _sign_as_operator(self, tx: Dict[str, Any]):
        fields = {k: v for k, v in tx.items() if k != "from"}
        return self._operator.sign_transaction(fields)

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def get_receipt(self, tx_hash: str) -> ReceiptInfo:
        try:
            raw = await self._rpc(self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return ReceiptInfo(mined=False)
        except (ValueError, Web3Exception) as e:
            raise ChainError(f"Receipt lookup failed for {tx_hash}: {e}", cause=e) from e
        if raw is None:
            return ReceiptInfo(mined=False)
        return ReceiptInfo(
            mined=True,
            success=int(raw["status"]) == 1,
            block_number=int(raw["blockNumber"]),
            logs=list(raw.get("logs", [])),
            raw=raw,
        )

    async def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None, poll_interval: float = 1.0) -> ReceiptInfo:
        """Poll until mined or the deadline passes (RECEIPT_TIMEOUT)"""
        timeout = Config.RECEIPT_WAIT_SECONDS if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt.mined:
                return receipt
            if time.monotonic() >= deadline:
                raise ReceiptTimeoutError(tx_hash)
            await asyncio.sleep(min(poll_interval, max(0.0, deadline - time.monotonic())))

    def parse_escrow_created(self, receipt: ReceiptInfo) -> Optional[str]:
        """Escrow address from a factory receipt's NewEscrowCreated event, if present"""
        if self.factory is None or receipt.raw is None:
            return None
        events = self.factory.events.NewEscrowCreated().process_receipt(receipt.raw, errors=DISCARD)
        for event in events:
            return str(event["args"]["escrowContractAddress"]).lower()
        return None

    # ------------------------------------------------------------------
    # Escrow operations
    # ------------------------------------------------------------------

    async def escrow_state(self, escrow_address: str) -> EscrowChainState:
        contract = self._escrow_contract(escrow_address)
        fns = contract.functions
        try:
            return EscrowChainState(
                buyer=str(await self._rpc(fns.buyer().call)).lower(),
                seller=str(await self._rpc(fns.seller().call)).lower(),
                arbitrator=str(await self._rpc(fns.arbitrator().call)).lower(),
                amount=int(await self._rpc(fns.amount().call)),
                state=int(await self._rpc(fns.currentState().call)),
                buyer_confirmed=bool(await self._rpc(fns.buyerConfirmedDelivery().call)),
                balance_wei=int(await self._rpc(fns.getBalance().call)),
                created_at_chain_ts=int(await self._rpc(fns.creationTimestamp().call)),
            )
        except EscrowCoreError:
            raise
        except (ValueError, Web3Exception) as e:
            raise ChainError(f"Escrow state read failed for {escrow_address}: {e}", cause=e) from e

    async def send_deploy_escrow(self, buyer_addr: str, seller_addr: str, arbitrator_addr: str, amount_wei: int) -> str:
        """Broadcast createEscrow from the operator; returns the tx hash"""
        if not self.is_initialized():
            raise ChainError("Escrow factory or operator is not configured")
        fn_call = self.factory.functions.createEscrow(
            _checksum(buyer_addr), _checksum(seller_addr), _checksum(arbitrator_addr), int(amount_wei)
        )
        async with self._operator_lock:
            gas_limit = await self._estimate_gas_limit(fn_call, self.operator_address)
            tx_hash = await self._build_and_send(self.operator_address, gas_limit, self._sign_as_operator, fn_call=fn_call)
        logger.info(f"📤 ESCROW_DEPLOY_SENT: tx={tx_hash} buyer={buyer_addr} seller={seller_addr}")
        return tx_hash

    async def _send_user_call(self, user_id: str, fn_call, label: str) -> str:
        if self.wallets is None:
            raise ChainError("Wallet registry is not attached to the chain gateway")
        sender = await self.wallets.require_address(user_id)
        estimate = await self._estimate_gas(fn_call, sender)
        if self.gas_subsidizer is not None:
            # funded against the raw estimate, not the padded limit
            await self.gas_subsidizer.ensure_gas(sender, estimate)
        gas_limit = self._gas_limit(estimate)

        async def sign(tx):
            return await self.wallets.sign_tx(user_id, tx)

        tx_hash = await self._build_and_send(sender, gas_limit, sign, fn_call=fn_call)
        logger.info(f"📤 USER_TX_SENT: {label} user={user_id} from={sender} tx={tx_hash}")
        return tx_hash

    async def send_user_tx(self, user_id: str, escrow_address: str, method: str) -> str:
        """Estimate, subsidise gas, sign with the user's wallet and broadcast"""
        fn_name = USER_METHODS.get(method)
        if fn_name is None:
            raise BadInputError(f"Unsupported escrow method: {method}")
        fn_call = getattr(self._escrow_contract(escrow_address).functions, fn_name)()
        return await self._send_user_call(user_id, fn_call, f"{method}@{escrow_address}")

    async def send_operator_tx(self, escrow_address: str, method: str, *args) -> str:
        fn_name = OPERATOR_METHODS.get(method)
        if fn_name is None:
            raise BadInputError(f"Unsupported operator method: {method}")
        if self._operator is None:
            raise ChainError("Operator account is not configured")
        call_args = [_checksum(a) if isinstance(a, str) and a.startswith("0x") and len(a) == 42 else a for a in args]
        fn_call = getattr(self._escrow_contract(escrow_address).functions, fn_name)(*call_args)
        async with self._operator_lock:
            gas_limit = await self._estimate_gas_limit(fn_call, self.operator_address)
            tx_hash = await self._build_and_send(self.operator_address, gas_limit, self._sign_as_operator, fn_call=fn_call)
        logger.info(f"📤 OPERATOR_TX_SENT: {method}@{escrow_address} tx={tx_hash}")
        return tx_hash

    async def transfer_native(self, to_address: str, value_wei: int, timeout: Optional[float] = None) -> ReceiptInfo:
        """Operator pays native coin to an address and waits for inclusion"""
        if self._operator is None:
            raise ChainError("Operator account is not configured")
        async with self._operator_lock:
            tx_hash = await self._build_and_send(
                self.operator_address, NATIVE_TRANSFER_GAS, self._sign_as_operator, to=to_address, value=int(value_wei)
            )
        receipt = await self.wait_for_receipt(tx_hash, timeout=timeout)
        if not receipt.success:
            raise ChainError(f"Native transfer {tx_hash} reverted", details={"tx_hash": tx_hash})
        return receipt

    # ------------------------------------------------------------------
    # Token burns
    # ------------------------------------------------------------------

    async def send_burn(self, user_id: str, amount_token: int) -> str:
        if self.token is None:
            raise ChainError("TOKEN_ADDRESS is not configured")
        fn_call = self.token.functions.burn(int(amount_token))
        return await self._send_user_call(user_id, fn_call, f"burn {amount_token}")

    async def verify_burn(self, tx_hash: str, expected_amount: int, expected_from: str) -> BurnVerification:
        """Confirm the receipt carries a Burn event for the expected amount by the expected wallet"""
        receipt = await self.get_receipt(tx_hash)
        if not receipt.mined:
            return BurnVerification(verified=False, reason="Transaction not mined")
        if not receipt.success:
            return BurnVerification(verified=False, block_number=receipt.block_number, reason="Transaction reverted")

        events = self.token.events.Burn().process_receipt(receipt.raw, errors=DISCARD)
        if not events:
            return BurnVerification(verified=False, block_number=receipt.block_number, reason="No Burn event in receipt")

        token_address = self.token.address.lower()
        for event in events:
            emitter = str(event.get("address", token_address)).lower()
            author = str(event["args"]["from"]).lower()
            amount = int(event["args"]["amount"])
            if emitter == token_address and author == expected_from.lower() and amount == int(expected_amount):
                return BurnVerification(verified=True, block_number=receipt.block_number)

        return BurnVerification(
            verified=False,
            block_number=receipt.block_number,
            reason="Burn event amount or author does not match the record",
        )


_gateway_instance: Optional[ChainGateway] = None


def get_chain_gateway() -> ChainGateway:
    """Process-wide gateway wired to the wallet registry and gas subsidizer"""
    global _gateway_instance
    if _gateway_instance is None:
        if not Config.RPC_URL:
            raise ChainError("RPC_URL is not configured")
        from services.gas_subsidizer import GasSubsidizer
        from services.wallet_registry import get_wallet_registry

        gateway = ChainGateway(wallets=get_wallet_registry())
        gateway.gas_subsidizer = GasSubsidizer(gateway)
        _gateway_instance = gateway
    return _gateway_instance
