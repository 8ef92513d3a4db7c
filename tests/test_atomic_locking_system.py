"""
Test Atomic Locking System
Database-backed named locks used for per-order and per-payout serialisation
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from database import async_managed_session
from models import DistributedLock
from services.atomic_lock_manager import AtomicLockManager, LockOperationType, atomic_lock_manager
from utils.exceptions import RequestTimeoutError


@pytest.mark.usefixtures("clean_database")
class TestAtomicLockManager:
    """Test atomic lock manager functionality"""

    @pytest.mark.asyncio
    async def test_atomic_lock_acquisition(self):
        """Test atomic lock can be acquired and released"""
        token = await atomic_lock_manager.acquire_lock(
            lock_name="escrow_order_test_001",
            operation_type=LockOperationType.ESCROW_TRANSITION,
            resource_id="test_001",
            timeout_seconds=60
        )

        assert token is not None, "Lock should be acquired successfully"
        released = await atomic_lock_manager.release_lock("escrow_order_test_001", token)
        assert released, "Lock should be released successfully"

    @pytest.mark.asyncio
    async def test_atomic_lock_contention(self):
        """Test that atomic locks prevent concurrent holders"""
        lock_name = "payout_contention_001"

        token1 = await atomic_lock_manager.acquire_lock(lock_name, LockOperationType.PAYOUT_UPDATE, "p1", 60)
        assert token1 is not None, "First lock should be acquired"

        token2 = await atomic_lock_manager.acquire_lock(lock_name, LockOperationType.PAYOUT_UPDATE, "p1", 1)
        assert token2 is None, "Second lock should fail due to contention"

        await atomic_lock_manager.release_lock(lock_name, token1)

        token3 = await atomic_lock_manager.acquire_lock(lock_name, LockOperationType.PAYOUT_UPDATE, "p1", 10)
        assert token3 is not None, "Lock should be available after release"
        await atomic_lock_manager.release_lock(lock_name, token3)

    @pytest.mark.asyncio
    async def test_release_with_wrong_token(self):
        token = await atomic_lock_manager.acquire_lock("burn_verify_x", LockOperationType.BURN_VERIFICATION)
        assert await atomic_lock_manager.release_lock("burn_verify_x", "not-the-owner") is False
        assert await atomic_lock_manager.release_lock("burn_verify_x", token) is True

    @pytest.mark.asyncio
    async def test_expired_lock_is_reaped(self):
        """A crashed holder's lock is taken over once it expires"""
        stale = await atomic_lock_manager.acquire_lock("payout_arm_stale", LockOperationType.PAYOUT_ARM)
        async with async_managed_session() as session:
            await session.execute(
                update(DistributedLock)
                .where(DistributedLock.lock_name == "payout_arm_stale")
                .values(expires_at=datetime.utcnow() - timedelta(seconds=5))
            )

        fresh = await atomic_lock_manager.acquire_lock("payout_arm_stale", LockOperationType.PAYOUT_ARM)

        assert fresh is not None, "Expired lock should be reaped"
        assert fresh != stale
        await atomic_lock_manager.release_lock("payout_arm_stale", fresh)

    @pytest.mark.asyncio
    async def test_hold_serialises_critical_sections(self):
        """Two holders of the same lock never overlap"""
        active = []
        overlaps = []

        async def critical(name):
            async with atomic_lock_manager.hold("escrow_order_serial", LockOperationType.ESCROW_TRANSITION):
                if active:
                    overlaps.append(name)
                active.append(name)
                await asyncio.sleep(0.05)
                active.remove(name)

        await asyncio.gather(critical("a"), critical("b"), critical("c"))
        assert overlaps == [], "Critical sections overlapped"

    @pytest.mark.asyncio
    async def test_hold_times_out(self):
        manager = AtomicLockManager()
        token = await manager.acquire_lock("escrow_order_busy", LockOperationType.ESCROW_TRANSITION)

        with pytest.raises(RequestTimeoutError):
            async with manager.hold("escrow_order_busy", LockOperationType.ESCROW_TRANSITION, wait_seconds=0.2):
                pass

        await manager.release_lock("escrow_order_busy", token)

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self):
        with pytest.raises(ValueError):
            async with atomic_lock_manager.hold("payout_err", LockOperationType.PAYOUT_UPDATE):
                raise ValueError("boom")

        token = await atomic_lock_manager.acquire_lock("payout_err", LockOperationType.PAYOUT_UPDATE)
        assert token is not None, "Lock should be released after an exception"
        await atomic_lock_manager.release_lock("payout_err", token)

    @pytest.mark.asyncio
    async def test_cleanup_expired_locks(self):
        await atomic_lock_manager.acquire_lock("old_lock", LockOperationType.PAYOUT_UPDATE)
        async with async_managed_session() as session:
            await session.execute(
                update(DistributedLock).values(expires_at=datetime.utcnow() - timedelta(minutes=1))
            )

        assert await atomic_lock_manager.cleanup_expired_locks() == 1
