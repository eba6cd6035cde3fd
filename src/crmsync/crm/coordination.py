"""Distributed sync coordination over Redis.

SyncCoordinator provides the cross-process guarantees a sync run relies on:
- At most one run per connection (non-blocking lock with a heartbeat)
- Serialized processing of any single record (short blocking lock)
- Cancellation flags visible to every worker, expiring on their own

Key pattern: t:{tenant_id}:crm:{lock|cancel}:...
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from src.crmsync.core.redis import tenant_key
from src.crmsync.crm.errors import EntityLockTimeoutError, SyncAlreadyRunningError

logger = structlog.get_logger(__name__)


class SyncCoordinator:
    """Tenant-scoped run locks, record locks and cancellation flags.

    Args:
        redis: Raw async Redis client.
        tenant_id: Tenant identifier for key scoping.
        lock_ttl: Seconds a connection lock lives without a heartbeat.
        record_lock_timeout: Seconds to wait for a record lock before failing the record.
        record_lock_ttl: Seconds a record lock lives if its holder dies.
        cancel_ttl: Seconds a cancellation flag is kept.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        tenant_id: str,
        lock_ttl: int = 300,
        record_lock_timeout: float = 30.0,
        record_lock_ttl: int = 120,
        cancel_ttl: int = 3600,
    ) -> None:
        self._redis = redis
        self._tenant_id = tenant_id
        self._lock_ttl = lock_ttl
        self._record_lock_timeout = record_lock_timeout
        self._record_lock_ttl = record_lock_ttl
        self._cancel_ttl = cancel_ttl

    # ── Keys ────────────────────────────────────────────────────────────────

    def _connection_lock_key(self, connection_id: str) -> str:
        return tenant_key(self._tenant_id, "crm", "lock", "connection", connection_id)

    def _record_lock_key(self, connection_id: str, *key: str) -> str:
        return tenant_key(self._tenant_id, "crm", "lock", "record", connection_id, *key)

    def _cancel_key(self, sync_id: str) -> str:
        return tenant_key(self._tenant_id, "crm", "cancel", sync_id)

    # ── Connection Lock ─────────────────────────────────────────────────────

    async def _heartbeat(self, lock: Lock, connection_id: str) -> None:
        interval = max(self._lock_ttl / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                await lock.reacquire()
            except LockError:
                logger.warning("crm_sync.lock_lost", connection_id=connection_id)
                return

    @asynccontextmanager
    async def connection_lock(self, connection_id: str) -> AsyncIterator[None]:
        """Hold the per-connection run lock for the duration of the block.

        Does not wait: a second run on the same connection fails immediately.
        The lock's TTL is refreshed in the background so long runs keep it,
        while a crashed worker's lock expires after ``lock_ttl`` seconds.

        Raises:
            SyncAlreadyRunningError: If another run holds the lock.
        """
        lock = self._redis.lock(
            self._connection_lock_key(connection_id),
            timeout=self._lock_ttl,
            thread_local=False,
        )
        acquired = await lock.acquire(blocking=False)
        if not acquired:
            raise SyncAlreadyRunningError(connection_id)

        heartbeat = asyncio.create_task(self._heartbeat(lock, connection_id))
        logger.debug("crm_sync.lock_acquired", connection_id=connection_id)
        try:
            yield
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            try:
                await lock.release()
            except LockError:
                logger.warning("crm_sync.lock_release_failed", connection_id=connection_id)

    # ── Record Lock ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def record_lock(self, connection_id: str, *key: str) -> AsyncIterator[None]:
        """Serialize work on one record across workers.

        Args:
            connection_id: Connection the record belongs to.
            *key: Record key parts, e.g. ("user", internal_id) or
                ("contact", external_id).

        Raises:
            EntityLockTimeoutError: If the lock is not acquired within
                ``record_lock_timeout`` seconds.
        """
        name = self._record_lock_key(connection_id, *key)
        lock = self._redis.lock(
            name,
            timeout=self._record_lock_ttl,
            blocking_timeout=self._record_lock_timeout,
            thread_local=False,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise EntityLockTimeoutError(
                f"Timed out after {self._record_lock_timeout}s waiting for lock on {':'.join(key)}"
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("crm_sync.record_lock_release_failed", key=name)

    # ── Cancellation ────────────────────────────────────────────────────────

    async def request_cancel(self, sync_id: str) -> None:
        """Flag a run as cancelled for every worker observing it."""
        await self._redis.set(self._cancel_key(sync_id), "1", ex=self._cancel_ttl)
        logger.info("crm_sync.cancel_requested", sync_id=sync_id)

    async def is_cancel_requested(self, sync_id: str) -> bool:
        return bool(await self._redis.exists(self._cancel_key(sync_id)))

    async def clear_cancel(self, sync_id: str) -> None:
        await self._redis.delete(self._cancel_key(sync_id))
