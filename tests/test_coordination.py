"""Unit tests for Redis-backed sync coordination and progress broadcasting.

Redis is replaced by MagicMock/AsyncMock; no server is needed.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError

from src.crmsync.crm.coordination import SyncCoordinator
from src.crmsync.crm.errors import EntityLockTimeoutError, SyncAlreadyRunningError
from src.crmsync.crm.progress import ProgressBroadcaster
from src.crmsync.crm.schemas import ProgressScope, ProgressStatus, SyncProgress


# ── Helpers ────────────────────────────────────────────────────────────────


def _make_redis(acquired: bool = True) -> tuple[MagicMock, MagicMock]:
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock()
    lock.reacquire = AsyncMock()
    redis = MagicMock()
    redis.lock.return_value = lock
    redis.set = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.exists = AsyncMock(return_value=0)
    redis.delete = AsyncMock()
    redis.publish = AsyncMock()
    return redis, lock


# ── SyncCoordinator ────────────────────────────────────────────────────────


class TestConnectionLock:
    """Test the per-connection run lock."""

    async def test_acquires_and_releases(self):
        redis, lock = _make_redis()
        coordinator = SyncCoordinator(redis, "tenant-1", lock_ttl=60)

        async with coordinator.connection_lock("conn-1"):
            lock.release.assert_not_awaited()

        redis.lock.assert_called_once_with(
            "t:tenant-1:crm:lock:connection:conn-1", timeout=60, thread_local=False
        )
        lock.acquire.assert_awaited_once_with(blocking=False)
        lock.release.assert_awaited_once()

    async def test_held_lock_raises_already_running(self):
        redis, lock = _make_redis(acquired=False)
        coordinator = SyncCoordinator(redis, "tenant-1")

        with pytest.raises(SyncAlreadyRunningError):
            async with coordinator.connection_lock("conn-1"):
                pytest.fail("body must not run")
        lock.release.assert_not_awaited()

    async def test_release_error_is_not_raised(self):
        redis, lock = _make_redis()
        lock.release.side_effect = LockError("expired")
        coordinator = SyncCoordinator(redis, "tenant-1")

        async with coordinator.connection_lock("conn-1"):
            pass

    async def test_lock_released_when_body_raises(self):
        redis, lock = _make_redis()
        coordinator = SyncCoordinator(redis, "tenant-1")

        with pytest.raises(ValueError):
            async with coordinator.connection_lock("conn-1"):
                raise ValueError("boom")
        lock.release.assert_awaited_once()


class TestRecordLock:
    """Test the per-record lock."""

    async def test_key_and_timeouts(self):
        redis, lock = _make_redis()
        coordinator = SyncCoordinator(redis, "tenant-1", record_lock_timeout=5.0, record_lock_ttl=20)

        async with coordinator.record_lock("conn-1", "user", "u1"):
            pass

        redis.lock.assert_called_once_with(
            "t:tenant-1:crm:lock:record:conn-1:user:u1",
            timeout=20,
            blocking_timeout=5.0,
            thread_local=False,
        )
        lock.release.assert_awaited_once()

    async def test_timeout_raises(self):
        redis, _ = _make_redis(acquired=False)
        coordinator = SyncCoordinator(redis, "tenant-1", record_lock_timeout=0.5)

        with pytest.raises(EntityLockTimeoutError, match="user:u1"):
            async with coordinator.record_lock("conn-1", "user", "u1"):
                pass


class TestCancellation:
    """Test the cancellation flags."""

    async def test_request_sets_flag_with_ttl(self):
        redis, _ = _make_redis()
        coordinator = SyncCoordinator(redis, "tenant-1", cancel_ttl=90)

        await coordinator.request_cancel("abc123")

        redis.set.assert_awaited_once_with("t:tenant-1:crm:cancel:abc123", "1", ex=90)

    async def test_is_cancel_requested(self):
        redis, _ = _make_redis()
        coordinator = SyncCoordinator(redis, "tenant-1")

        assert await coordinator.is_cancel_requested("abc123") is False
        redis.exists.return_value = 1
        assert await coordinator.is_cancel_requested("abc123") is True

    async def test_clear_cancel(self):
        redis, _ = _make_redis()
        coordinator = SyncCoordinator(redis, "tenant-1")

        await coordinator.clear_cancel("abc123")

        redis.delete.assert_awaited_once_with("t:tenant-1:crm:cancel:abc123")


# ── ProgressBroadcaster ────────────────────────────────────────────────────


class TestProgressBroadcaster:
    """Test progress publishing over a mocked Redis client."""

    def test_channel_names(self):
        broadcaster = ProgressBroadcaster(MagicMock(), "tenant-1")
        assert broadcaster.channel(ProgressScope.SYNC, "s1") == "t:tenant-1:crm:progress:sync:s1"
        assert (
            broadcaster.channel(ProgressScope.ENTITY_MAPPING, "m1")
            == "t:tenant-1:crm:progress:entity_mapping:m1"
        )

    async def test_start_stores_and_publishes_to_three_channels(self):
        redis, _ = _make_redis()
        broadcaster = ProgressBroadcaster(redis, "tenant-1", ttl_seconds=120)

        progress = await broadcaster.start("s1", "conn-1", "m1", "contacts", 4)

        assert progress.total_records == 4
        key, payload = redis.set.await_args.args
        assert key == "t:tenant-1:crm:progress:state:s1"
        assert redis.set.await_args.kwargs == {"ex": 120}
        assert json.loads(payload)["entity_name"] == "contacts"
        channels = [call.args[0] for call in redis.publish.await_args_list]
        assert channels == [
            "t:tenant-1:crm:progress:sync:s1",
            "t:tenant-1:crm:progress:entity_mapping:m1",
            "t:tenant-1:crm:progress:connection:conn-1",
        ]

    async def test_no_entity_mapping_channel_without_mapping(self):
        redis, _ = _make_redis()
        broadcaster = ProgressBroadcaster(redis, "tenant-1")

        await broadcaster.start("s1", "conn-1", None, "contacts", 0)

        assert redis.publish.await_count == 2

    async def test_counts_and_percent(self):
        redis, _ = _make_redis()
        broadcaster = ProgressBroadcaster(redis, "tenant-1")
        progress = await broadcaster.start("s1", "conn-1", "m1", "contacts", 4)

        await broadcaster.record_success(progress)
        await broadcaster.record_failure(progress, "bad email")

        assert progress.current_record == 2
        assert progress.success_count == 1
        assert progress.failed_count == 1
        assert progress.percent_complete == 50
        assert progress.error_message == "bad email"

    async def test_complete_sets_full_progress(self):
        redis, _ = _make_redis()
        broadcaster = ProgressBroadcaster(redis, "tenant-1")
        progress = await broadcaster.start("s1", "conn-1", "m1", "contacts", 3)

        await broadcaster.complete(progress)

        assert progress.status == ProgressStatus.COMPLETED
        assert progress.current_record == 3
        assert progress.percent_complete == 100
        assert progress.message == "0 succeeded, 0 failed"

    async def test_cancelled_keeps_partial_progress(self):
        redis, _ = _make_redis()
        broadcaster = ProgressBroadcaster(redis, "tenant-1")
        progress = await broadcaster.start("s1", "conn-1", "m1", "contacts", 4)
        await broadcaster.record_success(progress)

        await broadcaster.complete(progress, ProgressStatus.CANCELLED, "Sync cancelled")

        assert progress.percent_complete == 25
        assert progress.message == "Sync cancelled"

    async def test_redis_failure_is_swallowed(self):
        redis, _ = _make_redis()
        redis.set.side_effect = RedisConnectionError("down")
        broadcaster = ProgressBroadcaster(redis, "tenant-1")

        progress = await broadcaster.start("s1", "conn-1", "m1", "contacts", 1)

        assert progress.sync_id == "s1"
        redis.publish.assert_not_awaited()

    async def test_get_progress(self):
        redis, _ = _make_redis()
        stored = SyncProgress(sync_id="s1", connection_id="conn-1", total_records=2)
        redis.get.return_value = stored.model_dump_json()
        broadcaster = ProgressBroadcaster(redis, "tenant-1")

        progress = await broadcaster.get_progress("s1")

        redis.get.assert_awaited_once_with("t:tenant-1:crm:progress:state:s1")
        assert progress.total_records == 2

    async def test_get_progress_unknown_or_invalid(self):
        redis, _ = _make_redis()
        broadcaster = ProgressBroadcaster(redis, "tenant-1")

        assert await broadcaster.get_progress("missing") is None
        redis.get.return_value = "{not json"
        assert await broadcaster.get_progress("broken") is None
