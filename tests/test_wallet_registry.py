"""
Wallet Registry Tests
Custodial wallet creation, lookup and signing
"""

import pytest
from eth_account import Account
from sqlalchemy import select

from database import async_managed_session
from models import Wallet
from services.crypto_envelope import CryptoEnvelope
from services.wallet_registry import WalletRegistry
from utils.exceptions import CorruptEnvelopeError, NoWalletError

TX_FIELDS = {
    "nonce": 0,
    "gas": 21000,
    "gasPrice": 1_000_000_000,
    "chainId": 1337,
    "to": "0x" + "22" * 20,
    "value": 1,
}


@pytest.fixture
def registry():
    return WalletRegistry(envelope=CryptoEnvelope("w" * 40))


@pytest.mark.usefixtures("clean_database")
class TestWalletRegistry:

    @pytest.mark.asyncio
    async def test_get_or_create_is_stable(self, registry):
        first = await registry.get_or_create("user-1")
        second = await registry.get_or_create("user-1")

        assert first == second, "A user keeps one wallet"
        assert first.startswith("0x") and len(first) == 42
        assert await registry.address_of("user-1") == first

    @pytest.mark.asyncio
    async def test_secret_is_stored_sealed(self, registry):
        await registry.get_or_create("user-1")
        async with async_managed_session() as session:
            wallet = (await session.execute(select(Wallet).where(Wallet.user_id == "user-1"))).scalar_one()

        assert set(wallet.sealed_secret) == {"key_id", "nonce", "tag", "ciphertext"}
        assert len(bytes.fromhex(wallet.sealed_secret["ciphertext"])) == 32

    @pytest.mark.asyncio
    async def test_require_address_without_wallet(self, registry):
        assert await registry.address_of("nobody") is None
        with pytest.raises(NoWalletError):
            await registry.require_address("nobody")

    @pytest.mark.asyncio
    async def test_signature_recovers_to_wallet(self, registry):
        address = await registry.get_or_create("user-1")

        signed = await registry.sign_tx("user-1", dict(TX_FIELDS, **{"from": address}))

        assert Account.recover_transaction(signed.raw_transaction).lower() == address

    @pytest.mark.asyncio
    async def test_swapped_envelope_is_detected(self, registry):
        await registry.get_or_create("user-1")
        await registry.get_or_create("user-2")
        async with async_managed_session() as session:
            rows = (await session.execute(select(Wallet).order_by(Wallet.id))).scalars().all()
            rows[0].sealed_secret = dict(rows[1].sealed_secret)

        with pytest.raises(CorruptEnvelopeError):
            await registry.sign_tx("user-1", TX_FIELDS)

    @pytest.mark.asyncio
    async def test_sign_without_wallet(self, registry):
        with pytest.raises(NoWalletError):
            await registry.sign_tx("nobody", TX_FIELDS)
