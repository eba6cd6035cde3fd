"""In-memory stand-ins for the sync engine's collaborators.

- InMemoryCrmStore / InMemoryEntityStore: CrmStore and InternalEntityStore
  over dicts, enforcing the ledger's two uniqueness rules
- FakeProvider: CRMProvider over a dict of external records, with hooks to
  fail upserts or report the CRM unreachable
- FakeCoordinator: asyncio.Lock per record key, fail-fast connection lock
- RecordingBroadcaster: ProgressBroadcaster that records updates instead of publishing
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock

from src.crmsync.crm.accessors import InternalEntity, get_value
from src.crmsync.crm.errors import (
    PersistenceError,
    ProviderUnavailableError,
    SyncAlreadyRunningError,
)
from src.crmsync.crm.progress import ProgressBroadcaster
from src.crmsync.crm.providers.base import CRMProvider, signatures_match
from src.crmsync.crm.schemas import (
    Connection,
    CorrespondenceRecord,
    EntityMapping,
    EntitySchema,
    ExternalRecord,
    FieldMapping,
    FieldSchema,
    InternalEntityType,
    ProviderType,
    SyncDirection,
    SyncLogEntry,
    SyncProgress,
    SyncStatus,
    UpsertResult,
    WebhookEvent,
)
from src.crmsync.crm.store import CrmStore, InternalEntityStore

SIGNATURE_HEADER = "x-test-signature"

TENANT_ID = "tenant-1"
CONNECTION_ID = "conn-1"


# ── Builders ────────────────────────────────────────────────────────────────


def make_connection(**overrides) -> Connection:
    """Create a test Connection with sensible defaults."""
    defaults = {
        "id": CONNECTION_ID,
        "tenant_id": TENANT_ID,
        "provider": ProviderType.HUBSPOT,
        "display_name": "Test HubSpot",
        "sync_direction": SyncDirection.BIDIRECTIONAL,
    }
    defaults.update(overrides)
    return Connection(**defaults)


def make_user_mapping(**overrides) -> EntityMapping:
    """Contact <-> user mapping with first name, last name and email."""
    defaults = {
        "id": "map-users",
        "connection_id": CONNECTION_ID,
        "external_entity": "contacts",
        "internal_entity_type": InternalEntityType.USER,
        "sync_direction": SyncDirection.BIDIRECTIONAL,
        "field_mappings": [
            FieldMapping(internal_field="first_name", external_field="firstname", display_order=0),
            FieldMapping(internal_field="last_name", external_field="lastname", display_order=1),
            FieldMapping(internal_field="email", external_field="email", display_order=2),
        ],
    }
    defaults.update(overrides)
    return EntityMapping(**defaults)


def make_company_mapping(**overrides) -> EntityMapping:
    """Account <-> company mapping on the company title."""
    defaults = {
        "id": "map-companies",
        "connection_id": CONNECTION_ID,
        "external_entity": "accounts",
        "internal_entity_type": InternalEntityType.COMPANY,
        "sync_direction": SyncDirection.BIDIRECTIONAL,
        "field_mappings": [FieldMapping(internal_field="title", external_field="name")],
    }
    defaults.update(overrides)
    return EntityMapping(**defaults)


# ── Stores ──────────────────────────────────────────────────────────────────


class InMemoryCrmStore(CrmStore):
    def __init__(self) -> None:
        self.connections: dict[str, Connection] = {}
        self.mappings: dict[str, EntityMapping] = {}
        self.correspondences: list[CorrespondenceRecord] = []
        self.logs: list[SyncLogEntry] = []
        self.fail_log_writes = False

    async def get_connection(self, tenant_id: str, connection_id: str) -> Connection | None:
        connection = self.connections.get(connection_id)
        if connection is None or connection.tenant_id != tenant_id:
            return None
        return connection.model_copy(deep=True)

    async def list_connections(self, tenant_id: str, enabled_only: bool = False) -> list[Connection]:
        return [
            c.model_copy(deep=True) for c in self.connections.values()
            if c.tenant_id == tenant_id and (c.is_enabled or not enabled_only)
        ]

    async def save_connection(self, tenant_id: str, connection: Connection) -> Connection:
        if not connection.id:
            connection = connection.model_copy(update={"id": uuid.uuid4().hex})
        self.connections[connection.id] = connection.model_copy(deep=True)
        return connection

    async def update_connection_sync_state(
        self,
        tenant_id: str,
        connection_id: str,
        *,
        last_sync_at: datetime,
        last_sync_error: str | None,
        last_successful_sync_at: datetime | None = None,
    ) -> None:
        connection = self.connections[connection_id]
        update: dict[str, Any] = {"last_sync_at": last_sync_at, "last_sync_error": last_sync_error}
        if last_successful_sync_at is not None:
            update["last_successful_sync_at"] = last_successful_sync_at
        self.connections[connection_id] = connection.model_copy(update=update)

    async def list_entity_mappings(self, tenant_id: str, connection_id: str) -> list[EntityMapping]:
        return [
            m.model_copy(deep=True) for m in self.mappings.values()
            if m.connection_id == connection_id
        ]

    async def get_entity_mapping(self, tenant_id: str, entity_mapping_id: str) -> EntityMapping | None:
        mapping = self.mappings.get(entity_mapping_id)
        return mapping.model_copy(deep=True) if mapping else None

    async def save_entity_mapping(self, tenant_id: str, mapping: EntityMapping) -> EntityMapping:
        if not mapping.id:
            mapping = mapping.model_copy(update={"id": uuid.uuid4().hex})
        self.mappings[mapping.id] = mapping.model_copy(deep=True)
        return mapping

    async def get_correspondence_by_internal(
        self,
        tenant_id: str,
        connection_id: str,
        internal_type: InternalEntityType,
        internal_id: str,
    ) -> CorrespondenceRecord | None:
        for row in self.correspondences:
            if (
                row.connection_id == connection_id
                and row.internal_type == internal_type
                and row.internal_id == internal_id
            ):
                return row.model_copy(deep=True)
        return None

    async def get_correspondence_by_external(
        self,
        tenant_id: str,
        connection_id: str,
        external_entity: str,
        external_id: str,
    ) -> CorrespondenceRecord | None:
        for row in self.correspondences:
            if (
                row.connection_id == connection_id
                and row.external_entity == external_entity
                and row.external_id == external_id
            ):
                return row.model_copy(deep=True)
        return None

    async def upsert_correspondence(self, tenant_id: str, record: CorrespondenceRecord) -> CorrespondenceRecord:
        for row in self.correspondences:
            same_external = (
                row.connection_id == record.connection_id
                and row.external_entity == record.external_entity
                and row.external_id == record.external_id
            )
            same_internal = (
                row.internal_type == record.internal_type and row.internal_id == record.internal_id
            )
            if same_external and not same_internal:
                raise PersistenceError(
                    f"External record {record.external_entity}/{record.external_id} is already linked"
                )

        for index, row in enumerate(self.correspondences):
            if (
                row.connection_id == record.connection_id
                and row.internal_type == record.internal_type
                and row.internal_id == record.internal_id
            ):
                saved = record.model_copy(update={"id": row.id})
                self.correspondences[index] = saved
                return saved.model_copy(deep=True)

        saved = record.model_copy(update={"id": record.id or uuid.uuid4().hex})
        self.correspondences.append(saved)
        return saved.model_copy(deep=True)

    async def list_correspondences(
        self,
        tenant_id: str,
        connection_id: str,
        internal_type: InternalEntityType | None = None,
    ) -> list[CorrespondenceRecord]:
        return [
            row.model_copy(deep=True) for row in self.correspondences
            if row.connection_id == connection_id
            and (internal_type is None or row.internal_type == internal_type)
        ]

    async def append_sync_log(self, tenant_id: str, entry: SyncLogEntry) -> SyncLogEntry:
        if self.fail_log_writes:
            raise PersistenceError("sync log unavailable")
        saved = entry.model_copy(update={"id": uuid.uuid4().hex})
        self.logs.append(saved)
        return saved

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
        matching = [
            entry for entry in reversed(self.logs)
            if entry.connection_id == connection_id
            and (status is None or entry.status == status)
            and (since is None or entry.synced_at >= since)
            and (sync_id is None or entry.sync_id == sync_id)
        ]
        return matching[:limit]

    async def delete_sync_logs(
        self,
        tenant_id: str,
        connection_id: str,
        older_than: datetime | None = None,
    ) -> int:
        keep = [
            entry for entry in self.logs
            if entry.connection_id != connection_id
            or (older_than is not None and entry.synced_at >= older_than)
        ]
        deleted = len(self.logs) - len(keep)
        self.logs = keep
        return deleted

    # ── Test helpers ────────────────────────────────────────────────────────

    def logs_for(self, sync_id: str) -> list[SyncLogEntry]:
        return [entry for entry in self.logs if entry.sync_id == sync_id]


class InMemoryEntityStore(InternalEntityStore):
    def __init__(self) -> None:
        self.entities: dict[InternalEntityType, dict[str, InternalEntity]] = defaultdict(dict)
        self.saves = 0

    def add(self, entity_type: InternalEntityType, entity: InternalEntity) -> InternalEntity:
        if not entity.id:
            entity.id = uuid.uuid4().hex
        self.entities[entity_type][entity.id] = entity.model_copy(deep=True)
        return entity

    async def get_entity(
        self, tenant_id: str, entity_type: InternalEntityType, entity_id: str
    ) -> InternalEntity | None:
        entity = self.entities[entity_type].get(entity_id)
        return entity.model_copy(deep=True) if entity else None

    async def list_entities(self, tenant_id: str, entity_type: InternalEntityType) -> list[InternalEntity]:
        return [e.model_copy(deep=True) for e in self.entities[entity_type].values()]

    async def find_by_field(
        self, tenant_id: str, entity_type: InternalEntityType, path: str, value: str
    ) -> list[InternalEntity]:
        wanted = value.strip().lower()
        return [
            e.model_copy(deep=True) for e in self.entities[entity_type].values()
            if str(get_value(e, entity_type, path) or "").strip().lower() == wanted
        ]

    async def create_entity(self, tenant_id: str, entity_type: InternalEntityType, entity: InternalEntity) -> str:
        entity_id = uuid.uuid4().hex
        self.entities[entity_type][entity_id] = entity.model_copy(update={"id": entity_id}, deep=True)
        return entity_id

    async def save_entity(self, tenant_id: str, entity_type: InternalEntityType, entity: InternalEntity) -> None:
        if entity.id not in self.entities[entity_type]:
            raise PersistenceError(f"{entity_type.value} {entity.id} does not exist")
        self.entities[entity_type][entity.id] = entity.model_copy(deep=True)
        self.saves += 1

    def get(self, entity_type: InternalEntityType, entity_id: str) -> InternalEntity:
        return self.entities[entity_type][entity_id]


# ── Provider ────────────────────────────────────────────────────────────────


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class FakeProvider(CRMProvider):
    """CRM provider over an in-memory record table.

    Attributes:
        fail_upsert_if: Called with (entity, external_id, fields); an exception
            it returns is raised by upsert().
        unavailable: When True every upsert raises ProviderUnavailableError.
    """

    provider_type = ProviderType.HUBSPOT

    def __init__(self) -> None:
        self.records: dict[str, dict[str, ExternalRecord]] = defaultdict(dict)
        self.upserts: list[tuple[str, str | None, dict[str, Any]]] = []
        self.read_calls: list[tuple[str, datetime | None]] = []
        self.find_calls: list[tuple[str, str, str]] = []
        self.credentials_valid = True
        self.unavailable = False
        self.fail_upsert_if: Callable[[str, str | None, dict[str, Any]], Exception | None] | None = None
        self.on_upsert: Callable[[], Any] | None = None
        self._counter = 0

    def add_record(
        self,
        entity_name: str,
        record_id: str,
        fields: dict[str, Any],
        modified_on: datetime | None = None,
    ) -> ExternalRecord:
        record = ExternalRecord(
            entity_name=entity_name,
            id=record_id,
            fields=dict(fields),
            modified_on=modified_on or datetime.now(timezone.utc),
        )
        self.records[entity_name][record_id] = record
        return record

    async def validate_connection(self, connection: Connection) -> bool:
        return self.credentials_valid

    async def list_entities(self, connection: Connection) -> list[EntitySchema]:
        return [EntitySchema(name=name) for name in self.records]

    async def list_fields(self, connection: Connection, entity_name: str) -> list[FieldSchema]:
        names: dict[str, None] = {}
        for record in self.records[entity_name].values():
            names.update(dict.fromkeys(record.fields))
        return [FieldSchema(name=name) for name in names]

    async def read_changed(
        self,
        connection: Connection,
        entity_name: str,
        since: datetime | None = None,
        filter_expression: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> AsyncIterator[ExternalRecord]:
        self.read_calls.append((entity_name, since))
        for record in list(self.records[entity_name].values()):
            yield record.model_copy(deep=True)

    async def get_record(
        self, connection: Connection, entity_name: str, record_id: str
    ) -> ExternalRecord | None:
        record = self.records[entity_name].get(record_id)
        return record.model_copy(deep=True) if record else None

    async def find_by_field(
        self, connection: Connection, entity_name: str, field_name: str, value: str
    ) -> list[ExternalRecord]:
        self.find_calls.append((entity_name, field_name, value))
        wanted = value.strip().lower()
        return [
            record.model_copy(deep=True)
            for record in self.records[entity_name].values()
            if str(record.fields.get(field_name) or "").strip().lower() == wanted
        ]

    async def upsert(
        self,
        connection: Connection,
        entity_name: str,
        external_id: str | None,
        fields: dict[str, Any],
    ) -> UpsertResult:
        self.upserts.append((entity_name, external_id, dict(fields)))
        if self.on_upsert is not None:
            await self.on_upsert()
        if self.unavailable:
            raise ProviderUnavailableError("CRM unreachable")
        if self.fail_upsert_if is not None:
            error = self.fail_upsert_if(entity_name, external_id, fields)
            if error is not None:
                raise error

        if external_id is None:
            self._counter += 1
            new_id = f"{entity_name}-{self._counter}"
            self.add_record(entity_name, new_id, fields)
            return UpsertResult(external_id=new_id, created=True)

        record = self.records[entity_name][external_id]
        record.fields.update(fields)
        record.modified_on = datetime.now(timezone.utc)
        return UpsertResult(external_id=external_id, created=False)

    def parse_webhook_payload(
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookEvent | None:
        events = self.parse_webhook_events(raw_body, headers)
        return events[0] if events else None

    def parse_webhook_events(
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> list[WebhookEvent]:
        payload = json.loads(raw_body or b"[]")
        items = payload if isinstance(payload, list) else [payload]
        return [
            WebhookEvent(event_type=item["event"], entity_name=item["entity"], record_id=item["id"])
            for item in items
        ]

    def validate_webhook_signature(
        self, raw_body: bytes, headers: Mapping[str, str], secret: str
    ) -> bool:
        return signatures_match(sign(raw_body, secret), headers.get(SIGNATURE_HEADER))


# ── Coordination & Progress ─────────────────────────────────────────────────


class FakeCoordinator:
    """Process-local SyncCoordinator with the same locking contract."""

    def __init__(self) -> None:
        self.running: set[str] = set()
        self.cancelled: set[str] = set()
        self.record_locks: dict[tuple[str, ...], asyncio.Lock] = defaultdict(asyncio.Lock)
        self.locked_keys: list[tuple[str, ...]] = []

    @asynccontextmanager
    async def connection_lock(self, connection_id: str) -> AsyncIterator[None]:
        if connection_id in self.running:
            raise SyncAlreadyRunningError(connection_id)
        self.running.add(connection_id)
        try:
            yield
        finally:
            self.running.discard(connection_id)

    @asynccontextmanager
    async def record_lock(self, connection_id: str, *key: str) -> AsyncIterator[None]:
        full_key = (connection_id, *key)
        self.locked_keys.append(full_key)
        async with self.record_locks[full_key]:
            yield

    async def request_cancel(self, sync_id: str) -> None:
        self.cancelled.add(sync_id)

    async def is_cancel_requested(self, sync_id: str) -> bool:
        return sync_id in self.cancelled

    async def clear_cancel(self, sync_id: str) -> None:
        self.cancelled.discard(sync_id)


class RecordingBroadcaster(ProgressBroadcaster):
    """Keeps every published snapshot in memory instead of sending it to Redis."""

    def __init__(self, tenant_id: str = "tenant-1") -> None:
        super().__init__(MagicMock(), tenant_id)
        self.events: list[SyncProgress] = []
        self.latest: dict[str, SyncProgress] = {}

    async def _publish(self, progress: SyncProgress) -> None:
        if progress.total_records > 0:
            progress.percent_complete = min(
                100, int(progress.current_record * 100 / progress.total_records)
            )
        snapshot = progress.model_copy()
        self.events.append(snapshot)
        self.latest[progress.sync_id] = snapshot

    async def get_progress(self, sync_id: str) -> SyncProgress | None:
        return self.latest.get(sync_id)
