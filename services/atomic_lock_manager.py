"""
Atomic Lock Manager Service
Database-backed distributed locks keyed by name, using a unique constraint as
the atomic guarantee. Serialises escrow transitions per order and payout
updates per payout across every worker process.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import Config
from database import AsyncSessionLocal
from models import DistributedLock
from utils.exceptions import RequestTimeoutError

logger = logging.getLogger(__name__)


class LockOperationType(Enum):
    """Types of operations that require atomic locking"""
    ESCROW_TRANSITION = "escrow_transition"
    PAYOUT_UPDATE = "payout_update"
    PAYOUT_ARM = "payout_arm"
    BURN_VERIFICATION = "burn_verification"


class AtomicLockManager:
    """
    Named locks backed by the distributed_locks table.

    Inserting a row claims the lock; the unique lock_name makes a second
    insert fail with IntegrityError, which is contention. Releasing deletes
    the row. Rows past expires_at are reaped so a crashed holder cannot wedge
    a resource forever.
    """

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory
        self.default_lock_timeout = 120
        self.max_lock_duration = 3600
        self.retry_interval = 0.05

        self.metrics = {
            'locks_acquired': 0,
            'locks_failed': 0,
            'locks_released': 0,
            'lock_contentions': 0,
            'cleanup_operations': 0,
        }

    async def acquire_lock(
        self,
        lock_name: str,
        operation_type: LockOperationType,
        resource_id: str = None,
        timeout_seconds: int = None,
        metadata: Dict[str, Any] = None,
        _reaped: bool = False,
    ) -> Optional[str]:
        """
        Try once to acquire a lock.

        Returns:
            Owner token if acquired, None if another holder has it
        """
        timeout = timeout_seconds or self.default_lock_timeout
        if timeout > self.max_lock_duration:
            timeout = self.max_lock_duration
            logger.warning(f"Lock timeout capped at {self.max_lock_duration}s for {lock_name}")

        owner_token = uuid.uuid4().hex
        expires_at = datetime.utcnow() + timedelta(seconds=timeout)

        async with self.session_factory() as session:
            try:
                session.add(DistributedLock(
                    lock_name=lock_name,
                    owner_token=owner_token,
                    operation_type=operation_type.value,
                    resource_id=resource_id,
                    expires_at=expires_at,
                    lock_metadata=metadata,
                ))
                await session.commit()

                self.metrics['locks_acquired'] += 1
                logger.debug(
                    f"🔒 ATOMIC_LOCK_ACQUIRED: {lock_name} [{operation_type.value}] "
                    f"token={owner_token[:8]}... expires_in={timeout}s resource={resource_id}"
                )
                return owner_token

            except IntegrityError:
                await session.rollback()
                self.metrics['lock_contentions'] += 1

                if not _reaped:
                    result = await session.execute(
                        select(DistributedLock.expires_at).where(DistributedLock.lock_name == lock_name)
                    )
                    existing_expiry = result.scalar_one_or_none()
                    if existing_expiry is not None and existing_expiry < datetime.utcnow():
                        logger.info(f"🔄 ATOMIC_LOCK_EXPIRED: reaping stale holder of {lock_name}")
                        await session.execute(
                            delete(DistributedLock).where(
                                DistributedLock.lock_name == lock_name,
                                DistributedLock.expires_at < datetime.utcnow(),
                            )
                        )
                        await session.commit()
                        return await self.acquire_lock(
                            lock_name, operation_type, resource_id, timeout_seconds, metadata, _reaped=True
                        )

                logger.debug(f"⏳ ATOMIC_LOCK_CONTENTION: {lock_name} already held")
                self.metrics['locks_failed'] += 1
                return None

            except SQLAlchemyError as e:
                await session.rollback()
                self.metrics['locks_failed'] += 1
                logger.error(f"❌ ATOMIC_LOCK_ERROR: Failed to acquire {lock_name}: {e}")
                return None

    async def release_lock(self, lock_name: str, owner_token: str) -> bool:
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    delete(DistributedLock).where(
                        DistributedLock.lock_name == lock_name,
                        DistributedLock.owner_token == owner_token,
                    )
                )
                await session.commit()

                if result.rowcount > 0:
                    self.metrics['locks_released'] += 1
                    logger.debug(f"🔓 ATOMIC_LOCK_RELEASED: {lock_name} token={owner_token[:8]}...")
                    return True
                logger.warning(f"⚠️ ATOMIC_LOCK_NOT_FOUND: Cannot release {lock_name} token={owner_token[:8]}...")
                return False

            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"❌ ATOMIC_LOCK_RELEASE_ERROR: {lock_name}: {e}")
                return False

    @asynccontextmanager
    async def hold(
        self,
        lock_name: str,
        operation_type: LockOperationType,
        resource_id: str = None,
        wait_seconds: float = None,
        timeout_seconds: int = None,
        metadata: Dict[str, Any] = None,
    ):
        """
        Wait for a lock, hold it for the block, release it on exit.

        Raises RequestTimeoutError (TIMEOUT) if the lock is not acquired
        within wait_seconds.

        Usage:
            async with atomic_lock_manager.hold(
                f"escrow_order_{order_id}", LockOperationType.ESCROW_TRANSITION, resource_id=order_id
            ):
                ...
        """
        wait = Config.LOCK_WAIT_SECONDS if wait_seconds is None else wait_seconds
        deadline = time.monotonic() + wait
        token = None
        while token is None:
            token = await self.acquire_lock(lock_name, operation_type, resource_id, timeout_seconds, metadata)
            if token is None:
                if time.monotonic() >= deadline:
                    logger.warning(f"⏰ ATOMIC_LOCK_WAIT_EXPIRED: {lock_name} after {wait}s")
                    raise RequestTimeoutError(
                        f"Timed out waiting for {lock_name}", details={"resource_id": resource_id}
                    )
                await asyncio.sleep(self.retry_interval)

        try:
            yield token
        finally:
            await self.release_lock(lock_name, token)

    async def cleanup_expired_locks(self) -> int:
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    delete(DistributedLock).where(DistributedLock.expires_at < datetime.utcnow())
                )
                await session.commit()
                if result.rowcount:
                    self.metrics['cleanup_operations'] += 1
                    logger.info(f"🧹 ATOMIC_LOCK_CLEANUP: removed {result.rowcount} expired locks")
                return result.rowcount or 0
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"❌ CLEANUP_ERROR: {e}")
                return 0

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.copy()


# Global atomic lock manager instance
atomic_lock_manager = AtomicLockManager()
