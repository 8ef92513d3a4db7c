"""
Verification Loop Tests
Receipt reconciliation for escrow transactions and token burns
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, update

from database import async_managed_session
from jobs.verification_loop import VerificationLoop
from models import BurnRecord, BurnStatus, Escrow, EscrowStatus, EscrowTransaction, EscrowTxKind, Payout, PayoutStatus
from services.bank_detail_service import BankDetailService
from services.burn_ledger import BurnLedger
from services.escrow_coordinator import EscrowCoordinator
from services.payout_pipeline import MANUAL_NOT_CONFIGURED, PayoutPipeline
from tests.fixtures import BUYER_ID, VALID_BANK_DETAIL, create_order
from utils.exceptions import ReceiptTimeoutError, RequestTimeoutError
from utils.token_units import usd_to_token_units


@pytest.fixture
def coordinator(fake_gateway, fake_wallets):
    return EscrowCoordinator(gateway=fake_gateway, wallets=fake_wallets)


@pytest.fixture
def pipeline(mock_provider):
    return PayoutPipeline(provider=mock_provider)


@pytest.fixture
def burn_ledger(fake_gateway, fake_wallets, pipeline):
    ledger = BurnLedger(gateway=fake_gateway, wallets=fake_wallets, pipeline=pipeline)
    pipeline._burn_ledger = ledger
    return ledger


@pytest.fixture
def loop(fake_gateway, coordinator, burn_ledger):
    return VerificationLoop(gateway=fake_gateway, coordinator=coordinator, burn_ledger=burn_ledger)


async def _age_escrow_entries(hours: float):
    async with async_managed_session() as session:
        await session.execute(
            update(EscrowTransaction).values(submitted_at=datetime.utcnow() - timedelta(hours=hours))
        )


@pytest.mark.usefixtures("clean_database")
class TestVerificationLoop:
    """Verification cycle behaviour"""

    @pytest.mark.asyncio
    async def test_empty_cycle_makes_no_chain_calls(self):
        gateway = MagicMock()
        loop = VerificationLoop(gateway=gateway, coordinator=MagicMock(), burn_ledger=MagicMock())

        result = await loop.run_cycle()

        assert result.checked == 0
        gateway.get_receipt.assert_not_called()

    @pytest.mark.asyncio
    async def test_stuck_then_mined_escrow_transition(self, loop, coordinator, fake_gateway, buyer, seller):
        order_id = await create_order()
        await coordinator.create_escrow(order_id, seller)
        fake_gateway.auto_mine = False
        with pytest.raises(ReceiptTimeoutError):
            await coordinator.confirm_delivery(order_id, buyer)
        await _age_escrow_entries(3)

        stuck = await loop.run_cycle()
        assert stuck.checked == 1
        assert stuck.not_mined == 1
        assert stuck.stuck == 1, "A transaction older than the stuck threshold should alert"

        fake_gateway.mine(fake_gateway.calls("confirm_delivery")[0])
        mined = await loop.run_cycle()
        assert mined.escrow_confirmed == 1

        async with async_managed_session() as session:
            escrow = (await session.execute(select(Escrow).where(Escrow.order_id == order_id))).scalar_one()
            assert escrow.status == EscrowStatus.RELEASE_PENDING.value
            assert escrow.pending_status is None

        settled = await loop.run_cycle()
        assert settled.checked == 0, "Finalized entries leave the pending set"

    @pytest.mark.asyncio
    async def test_entries_outside_window_are_skipped(self, loop, coordinator, fake_gateway, buyer, seller):
        order_id = await create_order()
        await coordinator.create_escrow(order_id, seller)
        fake_gateway.auto_mine = False
        with pytest.raises(ReceiptTimeoutError):
            await coordinator.confirm_delivery(order_id, buyer)
        await _age_escrow_entries(48)

        result = await loop.run_cycle()
        assert result.checked == 0

    @pytest.mark.asyncio
    async def test_reverted_escrow_transition(self, loop, coordinator, fake_gateway, buyer, seller):
        order_id = await create_order()
        await coordinator.create_escrow(order_id, seller)
        fake_gateway.auto_mine = False
        with pytest.raises(ReceiptTimeoutError):
            await coordinator.confirm_delivery(order_id, buyer)

        fake_gateway.mine(fake_gateway.calls("confirm_delivery")[0], success=False)
        result = await loop.run_cycle()

        assert result.escrow_reverted == 1
        async with async_managed_session() as session:
            entry = (await session.execute(
                select(EscrowTransaction).where(EscrowTransaction.kind == EscrowTxKind.CONFIRM_DELIVERY.value)
            )).scalar_one()
            assert entry.error_message == "Transaction reverted on-chain"

    @pytest.mark.asyncio
    async def test_burn_confirmation_arms_single_payout(self, loop, pipeline, fake_gateway, fake_wallets):
        """A confirmed burn arms exactly one payout, however often it is verified"""
        address = await fake_wallets.get_or_create(BUYER_ID)
        fake_gateway.token_balances[address] = usd_to_token_units(Decimal("100"))
        fake_gateway.auto_mine = False
        bank = await BankDetailService().add_bank_detail(BUYER_ID, **VALID_BANK_DETAIL)

        claim = await pipeline.claim_payout(BUYER_ID, Decimal("25"), bank["id"])
        burn = claim["burn"]
        assert burn["status"] == BurnStatus.SUBMITTED.value

        fake_gateway.mine(burn["tx_hash"])
        result = await loop.run_cycle()
        assert result.burns_confirmed == 1
        await pipeline.burn_ledger.verify_now(burn["id"], BUYER_ID)

        async with async_managed_session() as session:
            payouts = list((await session.execute(select(Payout))).scalars().all())
            record = await session.get(BurnRecord, burn["id"])
        assert len(payouts) == 1, "Exactly one payout per confirmed burn"
        assert record.status == BurnStatus.CONFIRMED.value
        assert record.linked_payout_id == payouts[0].id
        assert payouts[0].status == PayoutStatus.PENDING_MANUAL.value
        assert payouts[0].failure_reason == MANUAL_NOT_CONFIGURED
        assert payouts[0].amount_inr == Decimal("2225.00")

    @pytest.mark.asyncio
    async def test_confirmed_burn_rearmed_after_arm_failure(self, loop, pipeline, fake_gateway, fake_wallets, monkeypatch):
        """A burn confirmed while arming failed gets its payout on the next cycle"""
        address = await fake_wallets.get_or_create(BUYER_ID)
        fake_gateway.token_balances[address] = usd_to_token_units(Decimal("100"))
        fake_gateway.auto_mine = False
        bank = await BankDetailService().add_bank_detail(BUYER_ID, **VALID_BANK_DETAIL)
        claim = await pipeline.claim_payout(BUYER_ID, Decimal("25"), bank["id"])
        burn_id = claim["burn"]["id"]

        original_arm = pipeline.arm
        attempts = []

        async def arm_once_failing(armed_burn_id):
            attempts.append(armed_burn_id)
            if len(attempts) == 1:
                raise RequestTimeoutError(f"Timed out waiting for payout_arm_{armed_burn_id}")
            return await original_arm(armed_burn_id)

        monkeypatch.setattr(pipeline, "arm", arm_once_failing)

        fake_gateway.mine(claim["burn"]["tx_hash"])
        first = await loop.run_cycle()
        assert len(first.errors) == 1, "Arm failure is reported by the cycle"
        async with async_managed_session() as session:
            record = await session.get(BurnRecord, burn_id)
        assert record.status == BurnStatus.CONFIRMED.value
        assert record.linked_payout_id is None

        second = await loop.run_cycle()
        assert second.payouts_armed == 1, "Unlinked confirmed burn should be armed"
        assert second.errors == []

        async with async_managed_session() as session:
            payouts = list((await session.execute(select(Payout))).scalars().all())
            record = await session.get(BurnRecord, burn_id)
        assert len(payouts) == 1
        assert record.linked_payout_id == payouts[0].id
        assert attempts == [burn_id, burn_id]

        settled = await loop.run_cycle()
        assert settled.checked == 0, "Armed burns leave the pending set"

    @pytest.mark.asyncio
    async def test_reverted_burn_fails_without_payout(self, loop, pipeline, fake_gateway, fake_wallets):
        address = await fake_wallets.get_or_create(BUYER_ID)
        fake_gateway.token_balances[address] = usd_to_token_units(Decimal("100"))
        fake_gateway.auto_mine = False
        bank = await BankDetailService().add_bank_detail(BUYER_ID, **VALID_BANK_DETAIL)

        claim = await pipeline.claim_payout(BUYER_ID, Decimal("20"), bank["id"])
        fake_gateway.mine(claim["burn"]["tx_hash"], success=False)
        result = await loop.run_cycle()

        assert result.burns_failed == 1
        async with async_managed_session() as session:
            record = await session.get(BurnRecord, claim["burn"]["id"])
            payout_count = len(list((await session.execute(select(Payout))).scalars().all()))
        assert record.status == BurnStatus.FAILED.value
        assert record.error_message == "Transaction reverted on-chain"
        assert payout_count == 0

    @pytest.mark.asyncio
    async def test_burn_without_matching_event_fails(self, loop, pipeline, fake_gateway, fake_wallets):
        address = await fake_wallets.get_or_create(BUYER_ID)
        fake_gateway.token_balances[address] = usd_to_token_units(Decimal("100"))
        fake_gateway.auto_mine = False
        bank = await BankDetailService().add_bank_detail(BUYER_ID, **VALID_BANK_DETAIL)

        claim = await pipeline.claim_payout(BUYER_ID, Decimal("20"), bank["id"])
        tx_hash = claim["burn"]["tx_hash"]
        fake_gateway.mine(tx_hash)
        fake_gateway.receipts[tx_hash].raw = {}
        await loop.run_cycle()

        async with async_managed_session() as session:
            record = await session.get(BurnRecord, claim["burn"]["id"])
        assert record.status == BurnStatus.FAILED.value
        assert record.error_message.startswith("Transaction succeeded but no valid burn event found")

    @pytest.mark.asyncio
    async def test_one_failing_record_does_not_stop_the_cycle(self, fake_gateway, coordinator, buyer, seller):
        order_id = await create_order()
        await coordinator.create_escrow(order_id, seller)
        fake_gateway.auto_mine = False
        with pytest.raises(ReceiptTimeoutError):
            await coordinator.confirm_delivery(order_id, buyer)
        fake_gateway.mine(fake_gateway.calls("confirm_delivery")[0])

        broken = MagicMock()
        broken.finalize_transaction.side_effect = RuntimeError("db gone")
        loop = VerificationLoop(gateway=fake_gateway, coordinator=broken, burn_ledger=MagicMock())

        result = await loop.run_cycle()
        assert result.checked == 1
        assert len(result.errors) == 1
