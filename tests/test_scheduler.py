"""Unit tests for the incremental sync scheduler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.crmsync.core.tenant import TenantContext, get_current_tenant
from src.crmsync.crm.scheduler import SyncScheduler, is_due
from src.crmsync.crm.schemas import SyncResult, SyncRunState
from tests.fakes import InMemoryCrmStore, make_connection

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _tenant(tenant_id: str) -> TenantContext:
    return TenantContext(tenant_id=tenant_id, tenant_slug=tenant_id, schema_name=f"tenant_{tenant_id}")


def _make_services(tenant_id: str, *connections) -> MagicMock:
    store = InMemoryCrmStore()
    for connection in connections:
        store.connections[connection.id] = connection.model_copy(update={"tenant_id": tenant_id})
    services = MagicMock()
    services.store = store
    services.engine.sync_incremental = AsyncMock(
        side_effect=lambda connection_id: SyncResult(
            success=True, state=SyncRunState.COMPLETED, sync_id=f"sync-{connection_id}"
        )
    )
    return services


class TestIsDue:
    """Test the per-connection polling interval."""

    def test_never_synced_is_due(self):
        assert is_due(make_connection(), NOW)

    def test_recent_sync_is_not_due(self):
        connection = make_connection(last_sync_at=NOW - timedelta(minutes=5), sync_interval_minutes=15)
        assert not is_due(connection, NOW)

    def test_elapsed_interval_is_due(self):
        connection = make_connection(last_sync_at=NOW - timedelta(minutes=15), sync_interval_minutes=15)
        assert is_due(connection, NOW)

    def test_naive_timestamp_is_utc(self):
        connection = make_connection(last_sync_at=datetime(2026, 5, 1, 11, 50), sync_interval_minutes=15)
        assert not is_due(connection, NOW)


class TestTick:
    """Test one polling pass across tenants."""

    async def test_runs_only_due_enabled_connections(self):
        services = _make_services(
            "tenant-a",
            make_connection(id="due"),
            make_connection(id="recent", last_sync_at=NOW - timedelta(minutes=1)),
            make_connection(id="disabled", is_enabled=False),
        )
        scheduler = SyncScheduler(
            AsyncMock(return_value=[_tenant("tenant-a")]), lambda tenant_id: services, tick_seconds=30
        )

        started = await scheduler.tick(NOW)

        assert started == 1
        services.engine.sync_incremental.assert_awaited_once_with("due")

    async def test_syncs_run_inside_tenant_scope(self):
        seen: list[str] = []
        services = _make_services("tenant-a", make_connection(id="due"))

        async def record_tenant(connection_id):
            seen.append(get_current_tenant().tenant_id)
            return SyncResult(success=True, state=SyncRunState.COMPLETED, sync_id="s1")

        services.engine.sync_incremental = AsyncMock(side_effect=record_tenant)
        scheduler = SyncScheduler(
            AsyncMock(return_value=[_tenant("tenant-a")]), lambda tenant_id: services, tick_seconds=30
        )

        await scheduler.tick(NOW)

        assert seen == ["tenant-a"]
        with pytest.raises(RuntimeError):
            get_current_tenant()

    async def test_failing_tenant_does_not_block_others(self):
        healthy = _make_services("tenant-b", make_connection(id="due"))

        def factory(tenant_id: str):
            if tenant_id == "tenant-a":
                raise RuntimeError("database unavailable")
            return healthy

        scheduler = SyncScheduler(
            AsyncMock(return_value=[_tenant("tenant-a"), _tenant("tenant-b")]), factory, tick_seconds=30
        )

        assert await scheduler.tick(NOW) == 1
        healthy.engine.sync_incremental.assert_awaited_once_with("due")

    async def test_tenant_query_failure(self):
        scheduler = SyncScheduler(
            AsyncMock(side_effect=OSError("connection refused")), MagicMock(), tick_seconds=30
        )
        assert await scheduler.tick(NOW) == 0


class TestLifecycle:
    """Test starting and stopping the interval job."""

    async def test_start_and_stop(self):
        scheduler = SyncScheduler(AsyncMock(return_value=[]), MagicMock(), tick_seconds=60)

        assert scheduler.start() is True
        assert scheduler.start() is False
        assert scheduler.running

        scheduler.stop()
        assert not scheduler.running
