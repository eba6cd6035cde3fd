"""Abstract persistence contracts consumed by the sync engine.

CrmStore covers sync configuration, the correspondence ledger and the sync
log. InternalEntityStore covers the internal users, companies and locations
being synced. Both are implemented over SQLAlchemy in repository.py and
entities.py; tests use in-memory implementations.

Implementations must enforce the ledger's two uniqueness rules
(connection + internal key, connection + external key) and raise
PersistenceError when a write violates them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from src.crmsync.crm.accessors import InternalEntity
from src.crmsync.crm.schemas import (
    Connection,
    CorrespondenceRecord,
    EntityMapping,
    InternalEntityType,
    SyncLogEntry,
    SyncStatus,
)


class CrmStore(ABC):
    """Persistence for connections, mappings, ledger rows and sync logs.

    Every method takes tenant_id as its first argument.
    """

    # ── Connections ─────────────────────────────────────────────────────────

    @abstractmethod
    async def get_connection(self, tenant_id: str, connection_id: str) -> Connection | None:
        """Fetch a connection by ID."""
        ...

    @abstractmethod
    async def list_connections(self, tenant_id: str, enabled_only: bool = False) -> list[Connection]:
        """List connections, optionally only enabled ones."""
        ...

    @abstractmethod
    async def save_connection(self, tenant_id: str, connection: Connection) -> Connection:
        """Insert or update a connection and return the stored version."""
        ...

    @abstractmethod
    async def update_connection_sync_state(
        self,
        tenant_id: str,
        connection_id: str,
        *,
        last_sync_at: datetime,
        last_sync_error: str | None,
        last_successful_sync_at: datetime | None = None,
    ) -> None:
        """Record a sync attempt. The watermark is only written when provided."""
        ...

    # ── Mappings ────────────────────────────────────────────────────────────

    @abstractmethod
    async def list_entity_mappings(self, tenant_id: str, connection_id: str) -> list[EntityMapping]:
        """List a connection's entity mappings with their field and relationship mappings."""
        ...

    @abstractmethod
    async def get_entity_mapping(self, tenant_id: str, entity_mapping_id: str) -> EntityMapping | None:
        """Fetch one entity mapping with its field and relationship mappings."""
        ...

    @abstractmethod
    async def save_entity_mapping(self, tenant_id: str, mapping: EntityMapping) -> EntityMapping:
        """Insert or update an entity mapping, replacing its field and relationship mappings."""
        ...

    # ── Correspondence Ledger ───────────────────────────────────────────────

    @abstractmethod
    async def get_correspondence_by_internal(
        self,
        tenant_id: str,
        connection_id: str,
        internal_type: InternalEntityType,
        internal_id: str,
    ) -> CorrespondenceRecord | None:
        ...

    @abstractmethod
    async def get_correspondence_by_external(
        self,
        tenant_id: str,
        connection_id: str,
        external_entity: str,
        external_id: str,
    ) -> CorrespondenceRecord | None:
        ...

    @abstractmethod
    async def upsert_correspondence(self, tenant_id: str, record: CorrespondenceRecord) -> CorrespondenceRecord:
        """Insert or update the row keyed on (connection, internal type, internal id).

        Raises:
            PersistenceError: If the external key already belongs to another internal record.
        """
        ...

    @abstractmethod
    async def list_correspondences(
        self,
        tenant_id: str,
        connection_id: str,
        internal_type: InternalEntityType | None = None,
    ) -> list[CorrespondenceRecord]:
        ...

    # ── Sync Log ────────────────────────────────────────────────────────────

    @abstractmethod
    async def append_sync_log(self, tenant_id: str, entry: SyncLogEntry) -> SyncLogEntry:
        """Append an immutable log entry."""
        ...

    @abstractmethod
    async def list_sync_logs(
        self,
        tenant_id: str,
        connection_id: str,
        *,
        limit: int = 100,
        status: SyncStatus | None = None,
        since: datetime | None = None,
        sync_id: str | None = None,
    ) -> list[SyncLogEntry]:
        """List log entries, newest first."""
        ...

    @abstractmethod
    async def delete_sync_logs(
        self,
        tenant_id: str,
        connection_id: str,
        older_than: datetime | None = None,
    ) -> int:
        """Delete log entries (all, or those before ``older_than``). Returns the count."""
        ...


class InternalEntityStore(ABC):
    """Persistence for the internal entities being synced."""

    @abstractmethod
    async def get_entity(
        self, tenant_id: str, entity_type: InternalEntityType, entity_id: str
    ) -> InternalEntity | None:
        ...

    @abstractmethod
    async def list_entities(self, tenant_id: str, entity_type: InternalEntityType) -> list[InternalEntity]:
        ...

    @abstractmethod
    async def find_by_field(
        self, tenant_id: str, entity_type: InternalEntityType, path: str, value: str
    ) -> list[InternalEntity]:
        """Find entities whose ``path`` equals ``value`` case-insensitively."""
        ...

    @abstractmethod
    async def create_entity(self, tenant_id: str, entity_type: InternalEntityType, entity: InternalEntity) -> str:
        """Persist a new entity and return its ID."""
        ...

    @abstractmethod
    async def save_entity(self, tenant_id: str, entity_type: InternalEntityType, entity: InternalEntity) -> None:
        """Persist changes to an existing entity."""
        ...
