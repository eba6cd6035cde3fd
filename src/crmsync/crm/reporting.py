"""Sync reporting -- logs, aggregate statistics, ledger listings and diagnostics.

These are the read operations an admin surface exposes, plus log retention.
Nothing here starts a sync.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

import structlog
from pydantic import BaseModel, Field

from src.crmsync.crm.errors import ConfigurationError
from src.crmsync.crm.field_mapping import validate_entity_mapping
from src.crmsync.crm.ledger import CorrespondenceLedger
from src.crmsync.crm.mapping_store import MappingConfigStore
from src.crmsync.crm.providers.factory import ProviderRegistry
from src.crmsync.crm.schemas import (
    CorrespondenceRecord,
    InternalEntityType,
    ProviderType,
    SyncAction,
    SyncDirection,
    SyncLogEntry,
    SyncStats,
    SyncStatus,
)
from src.crmsync.crm.store import CrmStore

logger = structlog.get_logger(__name__)

STATS_SAMPLE_LIMIT = 10_000


class ConnectionDiagnostics(BaseModel):
    """Health summary for one connection."""

    connection_id: str
    provider: ProviderType
    is_enabled: bool
    provider_supported: bool
    credentials_valid: bool | None = None
    last_sync_at: datetime | None = None
    last_successful_sync_at: datetime | None = None
    last_sync_error: str | None = None
    entity_mapping_count: int = 0
    enabled_mapping_count: int = 0
    link_count: int = 0
    configuration_errors: list[str] = Field(default_factory=list)
    recent_failures: list[str] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return (
            self.is_enabled
            and self.provider_supported
            and self.credentials_valid is not False
            and not self.configuration_errors
        )


def tally_sync_log(stats: SyncStats, entry: SyncLogEntry) -> None:
    """Add one log entry to ``stats``.

    Action counts (created/updated/deleted) only include successful entries.
    """
    stats.total_processed += 1
    if entry.direction == SyncDirection.INBOUND:
        stats.inbound_count += 1
    elif entry.direction == SyncDirection.OUTBOUND:
        stats.outbound_count += 1

    if entry.status == SyncStatus.SUCCESS:
        stats.success_count += 1
        if entry.action == SyncAction.CREATE:
            stats.created_count += 1
        elif entry.action == SyncAction.UPDATE:
            stats.updated_count += 1
        elif entry.action == SyncAction.DELETE:
            stats.deleted_count += 1
    elif entry.status == SyncStatus.FAILED:
        stats.failed_count += 1
    elif entry.status == SyncStatus.CONFLICT:
        stats.conflict_count += 1
    elif entry.status == SyncStatus.SKIPPED:
        stats.skipped_count += 1


def summarize_sync_logs(logs: Iterable[SyncLogEntry]) -> SyncStats:
    """Fold log entries into per-outcome counts."""
    stats = SyncStats()
    for entry in logs:
        tally_sync_log(stats, entry)
    return stats


class SyncReporter:
    """Tenant-scoped read access to sync history and health.

    Args:
        tenant_id: Tenant to report on.
        store: CRM persistence backend.
        providers: Registry used for support and credential checks.
        ledger: Correspondence ledger.
        log_retention_days: Default age cutoff for clear_sync_logs().
    """

    def __init__(
        self,
        tenant_id: str,
        store: CrmStore,
        providers: ProviderRegistry,
        ledger: CorrespondenceLedger,
        log_retention_days: int = 30,
    ) -> None:
        self._tenant_id = tenant_id
        self._store = store
        self._providers = providers
        self._ledger = ledger
        self._config = MappingConfigStore(tenant_id, store, providers)
        self._retention = timedelta(days=log_retention_days)

    async def get_sync_logs(
        self,
        connection_id: str,
        *,
        limit: int = 100,
        status: SyncStatus | None = None,
        since: datetime | None = None,
        sync_id: str | None = None,
    ) -> list[SyncLogEntry]:
        """Log entries for a connection, newest first."""
        return await self._store.list_sync_logs(
            self._tenant_id, connection_id, limit=limit, status=status, since=since, sync_id=sync_id
        )

    async def get_sync_stats(
        self,
        connection_id: str,
        since: datetime | None = None,
        sync_id: str | None = None,
    ) -> SyncStats:
        """Aggregate counts over a connection's logs plus its sync timestamps.

        Raises:
            ConfigurationError: If the connection does not exist.
        """
        connection = await self._config.get_connection(connection_id)
        logs = await self._store.list_sync_logs(
            self._tenant_id, connection_id, limit=STATS_SAMPLE_LIMIT, since=since, sync_id=sync_id
        )
        stats = summarize_sync_logs(logs)
        stats.last_sync_at = connection.last_sync_at
        stats.last_successful_sync_at = connection.last_successful_sync_at
        return stats

    async def clear_sync_logs(
        self,
        connection_id: str,
        older_than: datetime | timedelta | None = None,
    ) -> int:
        """Delete old log entries for a connection.

        Args:
            older_than: Cutoff timestamp, or an age relative to now. Defaults
                to the configured retention period.

        Returns:
            Number of entries deleted.
        """
        if older_than is None:
            older_than = self._retention
        cutoff = (
            datetime.now(timezone.utc) - older_than
            if isinstance(older_than, timedelta)
            else older_than
        )
        deleted = await self._store.delete_sync_logs(self._tenant_id, connection_id, older_than=cutoff)
        logger.info(
            "crm_reporting.logs_cleared",
            tenant_id=self._tenant_id,
            connection_id=connection_id,
            cutoff=cutoff.isoformat(),
            deleted=deleted,
        )
        return deleted

    async def list_links(
        self,
        connection_id: str,
        internal_type: InternalEntityType | None = None,
    ) -> list[CorrespondenceRecord]:
        return await self._ledger.list_links(connection_id, internal_type)

    async def get_diagnostics(self, connection_id: str, check_credentials: bool = True) -> ConnectionDiagnostics:
        """Summarize configuration, credential and recent-failure health for a connection.

        Raises:
            ConfigurationError: If the connection does not exist.
        """
        connection = await self._config.get_connection(connection_id)
        mappings = await self._store.list_entity_mappings(self._tenant_id, connection_id)
        links = await self._ledger.list_links(connection_id)
        failures = await self._store.list_sync_logs(
            self._tenant_id, connection_id, limit=10, status=SyncStatus.FAILED
        )

        diagnostics = ConnectionDiagnostics(
            connection_id=connection.id,
            provider=connection.provider,
            is_enabled=connection.is_enabled,
            provider_supported=self._providers.is_supported(connection.provider),
            last_sync_at=connection.last_sync_at,
            last_successful_sync_at=connection.last_successful_sync_at,
            last_sync_error=connection.last_sync_error,
            entity_mapping_count=len(mappings),
            enabled_mapping_count=sum(1 for m in mappings if m.is_enabled),
            link_count=len(links),
            recent_failures=[
                f"{entry.external_entity} {entry.internal_id or entry.external_id}: {entry.error_message}"
                for entry in failures
            ],
        )

        for mapping in mappings:
            if not mapping.is_enabled:
                continue
            try:
                validate_entity_mapping(mapping, connection.sync_direction)
            except ConfigurationError as exc:
                diagnostics.configuration_errors.append(f"{mapping.external_entity}: {exc}")

        if check_credentials and diagnostics.provider_supported:
            provider = self._providers.get_provider(connection.provider)
            diagnostics.credentials_valid = await provider.validate_connection(connection)

        logger.debug(
            "crm_reporting.diagnostics",
            tenant_id=self._tenant_id,
            connection_id=connection_id,
            healthy=diagnostics.healthy,
        )
        return diagnostics
