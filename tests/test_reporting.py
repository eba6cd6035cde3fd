"""Unit tests for sync reporting, log retention and diagnostics."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.crmsync.crm.errors import ConfigurationError
from src.crmsync.crm.reporting import SyncReporter, summarize_sync_logs
from src.crmsync.crm.schemas import (
    FieldMapping,
    InternalEntityType,
    ProviderType,
    SyncAction,
    SyncDirection,
    SyncLogEntry,
    SyncStatus,
)
from tests.fakes import CONNECTION_ID, TENANT_ID, make_connection, make_user_mapping

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _entry(
    status: SyncStatus = SyncStatus.SUCCESS,
    action: SyncAction = SyncAction.CREATE,
    direction: SyncDirection = SyncDirection.OUTBOUND,
    **overrides,
) -> SyncLogEntry:
    defaults = {
        "connection_id": CONNECTION_ID,
        "entity_mapping_id": "map-users",
        "sync_id": "sync-a",
        "internal_type": InternalEntityType.USER,
        "internal_id": "u1",
        "external_entity": "contacts",
        "direction": direction,
        "action": action,
        "status": status,
        "synced_at": NOW,
    }
    defaults.update(overrides)
    return SyncLogEntry(**defaults)


@pytest.fixture
def reporter(store, registry, ledger, connection) -> SyncReporter:
    return SyncReporter(TENANT_ID, store, registry, ledger, log_retention_days=30)


# ── Statistics ─────────────────────────────────────────────────────────────


class TestSyncStats:
    """Test folding log entries into counts."""

    def test_summarize(self):
        stats = summarize_sync_logs([
            _entry(),
            _entry(action=SyncAction.UPDATE, direction=SyncDirection.INBOUND),
            _entry(status=SyncStatus.FAILED, action=SyncAction.UPDATE),
            _entry(status=SyncStatus.SKIPPED, action=SyncAction.SKIP),
            _entry(status=SyncStatus.CONFLICT, action=SyncAction.UPDATE),
        ])

        assert stats.total_processed == 5
        assert (stats.success_count, stats.failed_count) == (2, 1)
        assert (stats.skipped_count, stats.conflict_count) == (1, 1)
        assert (stats.created_count, stats.updated_count) == (1, 1)
        assert (stats.inbound_count, stats.outbound_count) == (1, 4)

    async def test_stats_include_connection_timestamps(self, reporter, store):
        store.connections[CONNECTION_ID] = make_connection(last_sync_at=NOW, last_successful_sync_at=NOW)
        store.logs = [_entry(), _entry(sync_id="sync-b", status=SyncStatus.FAILED)]

        stats = await reporter.get_sync_stats(CONNECTION_ID)
        only_b = await reporter.get_sync_stats(CONNECTION_ID, sync_id="sync-b")

        assert stats.total_processed == 2
        assert stats.last_sync_at == NOW
        assert stats.last_successful_sync_at == NOW
        assert only_b.failed_count == 1
        assert only_b.success_count == 0

    async def test_stats_for_unknown_connection(self, reporter):
        with pytest.raises(ConfigurationError):
            await reporter.get_sync_stats("ghost")

    async def test_logs_are_newest_first(self, reporter, store):
        store.logs = [_entry(internal_id="old"), _entry(internal_id="new")]

        logs = await reporter.get_sync_logs(CONNECTION_ID, limit=1)

        assert [entry.internal_id for entry in logs] == ["new"]


# ── Retention ──────────────────────────────────────────────────────────────


class TestClearSyncLogs:
    """Test log deletion by absolute and relative cutoff."""

    async def test_clear_older_than_age(self, reporter, store):
        recent = datetime.now(timezone.utc) - timedelta(days=1)
        store.logs = [
            _entry(internal_id="stale", synced_at=recent - timedelta(days=60)),
            _entry(internal_id="fresh", synced_at=recent),
        ]

        deleted = await reporter.clear_sync_logs(CONNECTION_ID, timedelta(days=7))

        assert deleted == 1
        assert [entry.internal_id for entry in store.logs] == ["fresh"]

    async def test_clear_before_timestamp(self, reporter, store):
        store.logs = [_entry(synced_at=NOW - timedelta(hours=1)), _entry(synced_at=NOW + timedelta(hours=1))]
        assert await reporter.clear_sync_logs(CONNECTION_ID, NOW) == 1

    async def test_default_retention(self, reporter, store):
        store.logs = [
            _entry(synced_at=datetime.now(timezone.utc) - timedelta(days=31)),
            _entry(synced_at=datetime.now(timezone.utc) - timedelta(days=29)),
        ]
        assert await reporter.clear_sync_logs(CONNECTION_ID) == 1

    async def test_other_connections_untouched(self, reporter, store):
        store.logs = [_entry(connection_id="conn-2", synced_at=NOW - timedelta(days=400))]
        assert await reporter.clear_sync_logs(CONNECTION_ID) == 0
        assert len(store.logs) == 1


# ── Diagnostics ────────────────────────────────────────────────────────────


class TestDiagnostics:
    """Test the connection health summary."""

    async def test_healthy_connection(self, reporter, store, ledger):
        store.mappings["map-users"] = make_user_mapping()
        await ledger.link(CONNECTION_ID, InternalEntityType.USER, "u1", "contacts", "c-1", SyncDirection.OUTBOUND)

        diagnostics = await reporter.get_diagnostics(CONNECTION_ID)

        assert diagnostics.healthy
        assert diagnostics.credentials_valid is True
        assert (diagnostics.entity_mapping_count, diagnostics.enabled_mapping_count) == (1, 1)
        assert diagnostics.link_count == 1

    async def test_invalid_credentials_and_failures(self, reporter, store, provider):
        provider.credentials_valid = False
        store.logs = [_entry(status=SyncStatus.FAILED, error_message="HTTP 400: bad email")]

        diagnostics = await reporter.get_diagnostics(CONNECTION_ID)

        assert diagnostics.healthy is False
        assert diagnostics.recent_failures == ["contacts u1: HTTP 400: bad email"]

    async def test_configuration_errors_are_collected(self, reporter, store):
        store.mappings["map-users"] = make_user_mapping(field_mappings=[
            FieldMapping(internal_field="shoe_size", external_field="shoesize"),
        ])

        diagnostics = await reporter.get_diagnostics(CONNECTION_ID, check_credentials=False)

        assert diagnostics.credentials_valid is None
        assert len(diagnostics.configuration_errors) == 1
        assert diagnostics.configuration_errors[0].startswith("contacts: Unknown field 'shoe_size'")
        assert diagnostics.healthy is False

    async def test_unsupported_provider(self, reporter, store):
        store.connections[CONNECTION_ID] = make_connection(provider=ProviderType.SALESFORCE)

        diagnostics = await reporter.get_diagnostics(CONNECTION_ID)

        assert diagnostics.provider_supported is False
        assert diagnostics.credentials_valid is None
        assert diagnostics.healthy is False
