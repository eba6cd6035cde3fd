"""Correspondence ledger -- the durable internal <-> external identity map.

The ledger is the only source of truth for whether a record has ever been
synced. Each row also carries the last-synced internal snapshot, which the
sync engine diffs against to send only changed fields.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog

from src.crmsync.crm.coordination import SyncCoordinator
from src.crmsync.crm.errors import PersistenceError
from src.crmsync.crm.field_mapping import fingerprint
from src.crmsync.crm.schemas import CorrespondenceRecord, InternalEntityType, SyncDirection
from src.crmsync.crm.store import CrmStore

logger = structlog.get_logger(__name__)


class CorrespondenceLedger:
    """Tenant-scoped view over the correspondence rows of a CrmStore.

    Args:
        tenant_id: Tenant whose ledger this is.
        store: Persistence backend.
        coordinator: Provides per-record locks.
    """

    def __init__(self, tenant_id: str, store: CrmStore, coordinator: SyncCoordinator) -> None:
        self._tenant_id = tenant_id
        self._store = store
        self._coordinator = coordinator

    async def resolve_external(
        self,
        connection_id: str,
        internal_type: InternalEntityType,
        internal_id: str,
    ) -> CorrespondenceRecord | None:
        """Ledger row for an internal record, or None if never synced."""
        return await self._store.get_correspondence_by_internal(
            self._tenant_id, connection_id, internal_type, internal_id
        )

    async def resolve_internal(
        self,
        connection_id: str,
        external_entity: str,
        external_id: str,
    ) -> CorrespondenceRecord | None:
        """Ledger row for an external record, or None if never synced."""
        return await self._store.get_correspondence_by_external(
            self._tenant_id, connection_id, external_entity, external_id
        )

    async def link(
        self,
        connection_id: str,
        internal_type: InternalEntityType,
        internal_id: str,
        external_entity: str,
        external_id: str,
        direction: SyncDirection,
        snapshot: dict[str, Any] | None = None,
    ) -> CorrespondenceRecord:
        """Create or refresh the row pairing the two records.

        Args:
            snapshot: Internal field values as of this sync. When None, the
                previously stored snapshot is kept.

        Raises:
            PersistenceError: If the external record is already linked to a
                different internal record.
        """
        existing = await self.resolve_external(connection_id, internal_type, internal_id)
        if snapshot is None:
            snapshot = existing.last_synced_fields if existing else {}

        record = CorrespondenceRecord(
            id=existing.id if existing else "",
            connection_id=connection_id,
            internal_type=internal_type,
            internal_id=internal_id,
            external_entity=external_entity,
            external_id=external_id,
            last_synced_at=datetime.now(timezone.utc),
            last_sync_direction=direction,
            last_sync_hash=fingerprint(snapshot),
            last_synced_fields=snapshot,
        )
        try:
            saved = await self._store.upsert_correspondence(self._tenant_id, record)
        except PersistenceError:
            logger.warning(
                "crm_ledger.link_conflict",
                connection_id=connection_id,
                internal_type=internal_type.value,
                internal_id=internal_id,
                external_entity=external_entity,
                external_id=external_id,
            )
            raise

        if existing is None:
            logger.debug(
                "crm_ledger.linked",
                connection_id=connection_id,
                internal_type=internal_type.value,
                internal_id=internal_id,
                external_id=external_id,
            )
        return saved

    async def list_links(
        self,
        connection_id: str,
        internal_type: InternalEntityType | None = None,
    ) -> list[CorrespondenceRecord]:
        return await self._store.list_correspondences(self._tenant_id, connection_id, internal_type)

    @asynccontextmanager
    async def record_lock(self, connection_id: str, *key: str) -> AsyncIterator[None]:
        """Per-record lock held while a record is resolved, written and linked."""
        async with self._coordinator.record_lock(connection_id, *key):
            yield

    # Internal types and external entity names can coincide ("company"), so
    # the two key families get distinct prefixes.

    def internal_lock(
        self, connection_id: str, internal_type: InternalEntityType, internal_id: str
    ) -> AbstractAsyncContextManager[None]:
        return self.record_lock(connection_id, "int", internal_type.value, internal_id)

    def external_lock(
        self, connection_id: str, external_entity: str, external_id: str
    ) -> AbstractAsyncContextManager[None]:
        return self.record_lock(connection_id, "ext", external_entity, external_id)
