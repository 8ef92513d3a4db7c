"""
Wallet Registry
Durable user -> custodial wallet map with lazily generated secp256k1 keys
"""

import logging
from typing import Any, Callable, Dict, Optional

from eth_account import Account
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from database import async_managed_session
from models import Wallet
from services.crypto_envelope import CryptoEnvelope, get_crypto_envelope
from utils.exceptions import CorruptEnvelopeError, KeyUnavailableError, NoWalletError, SignFailedError

logger = logging.getLogger(__name__)


class WalletRegistry:
    """Creates, looks up and signs with custodial wallets; plaintext keys never leave sign_tx"""

    def __init__(self, envelope: Optional[CryptoEnvelope] = None, session_factory: Callable = async_managed_session):
        self._envelope = envelope
        self.session_factory = session_factory

    @property
    def envelope(self) -> CryptoEnvelope:
        if self._envelope is None:
            self._envelope = get_crypto_envelope()
        return self._envelope

    async def get_or_create(self, user_id: str) -> str:
        """Return the user's wallet address, generating and sealing a key on first use"""
        address = await self.address_of(user_id)
        if address:
            return address

        account = Account.create()
        sealed = self.envelope.seal(bytes(account.key))
        address = account.address.lower()
        del account

        try:
            async with self.session_factory() as session:
                session.add(Wallet(user_id=user_id, address=address, sealed_secret=sealed))
            logger.info(f"✅ WALLET_CREATED: user={user_id} address={address}")
            return address
        except IntegrityError:
            # Another request created the wallet first; theirs wins
            existing = await self.address_of(user_id)
            if existing is None:
                raise
            logger.info(f"🔄 WALLET_CREATE_RACE: user={user_id} reusing {existing}")
            return existing

    async def address_of(self, user_id: str) -> Optional[str]:
        async with self.session_factory() as session:
            result = await session.execute(select(Wallet.address).where(Wallet.user_id == user_id))
            return result.scalar_one_or_none()

    async def require_address(self, user_id: str) -> str:
        address = await self.address_of(user_id)
        if address is None:
            raise NoWalletError(f"No wallet for user {user_id}")
        return address

    async def sign_tx(self, user_id: str, tx_fields: Dict[str, Any]):
        """Sign a transaction dict with the user's key and return the SignedTransaction"""
        async with self.session_factory() as session:
            result = await session.execute(select(Wallet).where(Wallet.user_id == user_id))
            wallet = result.scalar_one_or_none()
        if wallet is None:
            raise NoWalletError(f"No wallet for user {user_id}")

        fields = {k: v for k, v in tx_fields.items() if k != "from"}
        try:
            secret = self.envelope.open(wallet.sealed_secret)
            signer = Account.from_key(secret)
            if signer.address.lower() != wallet.address:
                logger.critical(f"🚨 ALERT WALLET_DERIVATION_MISMATCH: user={user_id} address={wallet.address}")
                raise CorruptEnvelopeError(f"Sealed key for user {user_id} does not derive its address")
            return signer.sign_transaction(fields)
        except (CorruptEnvelopeError, KeyUnavailableError):
            raise
        except Exception as e:
            logger.error(f"❌ SIGN_FAILED: user={user_id} error={type(e).__name__}")
            raise SignFailedError(f"Signing failed for user {user_id}: {type(e).__name__}") from e


_registry_instance: Optional[WalletRegistry] = None


def get_wallet_registry() -> WalletRegistry:
    global _registry_instance
    if _registry_instance is None:
        _registry_instance = WalletRegistry()
    return _registry_instance
