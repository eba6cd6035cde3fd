"""Pydantic schemas for CRM synchronization -- configuration, ledger, logs, results.

Defines all structured types for the sync lifecycle:
- Enums: SyncDirection, InternalEntityType, ProviderType, SyncAction, SyncStatus,
  SyncRunState, SyncMode, FailureKind, ProgressStatus, ProgressScope
- Configuration: Connection, EntityMapping, FieldMapping, RelationshipMapping
- Ledger and audit: CorrespondenceRecord, SyncLogEntry
- Provider payloads: ExternalRecord, UpsertResult, EntitySchema, FieldSchema,
  OptionSetValue, WebhookEvent
- Results: SyncStats, SyncResult, SyncProgress
- Duplicate detection: DuplicateGroup, UnlinkedMatch, DuplicateReport
- Transformation variants: typed configuration per transformation kind, combined
  into the Transformation discriminated union

Internal entity models live in accessors.py next to their field accessor registry.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncDirection(str, Enum):
    """Which way data flows for a connection, entity mapping or field."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"
    BIDIRECTIONAL = "bidirectional"

    @property
    def includes_inbound(self) -> bool:
        return self in (SyncDirection.INBOUND, SyncDirection.BIDIRECTIONAL)

    @property
    def includes_outbound(self) -> bool:
        return self in (SyncDirection.OUTBOUND, SyncDirection.BIDIRECTIONAL)

    def covers(self, other: SyncDirection) -> bool:
        """Return True if every flow allowed by ``other`` is allowed by self."""
        if other.includes_inbound and not self.includes_inbound:
            return False
        if other.includes_outbound and not self.includes_outbound:
            return False
        return True

    def intersect(self, other: SyncDirection) -> SyncDirection | None:
        """Return the direction allowed by both, or None if they are disjoint."""
        inbound = self.includes_inbound and other.includes_inbound
        outbound = self.includes_outbound and other.includes_outbound
        if inbound and outbound:
            return SyncDirection.BIDIRECTIONAL
        if inbound:
            return SyncDirection.INBOUND
        if outbound:
            return SyncDirection.OUTBOUND
        return None


class InternalEntityType(str, Enum):
    """Internal business entity types that can be synced."""

    USER = "user"
    COMPANY = "company"
    LOCATION = "location"


class ProviderType(str, Enum):
    """External CRM vendors. Only registered providers can be used."""

    DYNAMICS365 = "dynamics365"
    HUBSPOT = "hubspot"
    GOOGLE_CONTACTS = "google_contacts"
    MICROSOFT_GRAPH = "microsoft_graph"
    SENDGRID_CONTACTS = "sendgrid_contacts"
    SALESFORCE = "salesforce"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"
    PENDING = "pending"


class SyncRunState(str, Enum):
    """Lifecycle of one sync run."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    MAPPING = "mapping"
    UPSERTING = "upserting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncRunState.COMPLETED, SyncRunState.FAILED, SyncRunState.CANCELLED)


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    ENTITY_MAPPING = "entity_mapping"
    RELATIONSHIPS = "relationships"
    OUTBOUND_RECORD = "outbound_record"
    INBOUND_RECORD = "inbound_record"


class FailureKind(str, Enum):
    """Why a run aborted at the connection level."""

    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER = "provider"
    ALREADY_RUNNING = "already_running"
    PERSISTENCE = "persistence"
    INTERNAL = "internal"


class ProgressStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProgressScope(str, Enum):
    """Fan-out scopes a progress subscriber can join."""

    SYNC = "sync"
    ENTITY_MAPPING = "entity_mapping"
    CONNECTION = "connection"


# ── Transformation Variants ─────────────────────────────────────────────────
# One typed configuration per transformation kind, discriminated on ``kind``.


class UppercaseTransform(BaseModel):
    kind: Literal["uppercase"] = "uppercase"


class LowercaseTransform(BaseModel):
    kind: Literal["lowercase"] = "lowercase"


class TrimTransform(BaseModel):
    kind: Literal["trim"] = "trim"


class DateFormatTransform(BaseModel):
    """Outbound: format a date with ``external_format`` (strftime). Inbound: parse any date."""

    kind: Literal["date_format"] = "date_format"
    external_format: str = "%Y-%m-%dT%H:%M:%SZ"


class LookupTransform(BaseModel):
    """Internal value -> external value table. Reverse lookups pick the first-inserted key."""

    kind: Literal["lookup"] = "lookup"
    table: dict[str, str] = Field(default_factory=dict)


class ConcatTransform(BaseModel):
    kind: Literal["concat"] = "concat"
    prefix: str = ""
    suffix: str = ""


class SplitTransform(BaseModel):
    kind: Literal["split"] = "split"
    delimiter: str = Field(default=" ", min_length=1)
    index: int = 0


class DefaultTransform(BaseModel):
    kind: Literal["default"] = "default"
    value: Any = None


class BooleanTransform(BaseModel):
    """Outbound tokens apply only when both are configured."""

    kind: Literal["boolean"] = "boolean"
    true_value: str | None = None
    false_value: str | None = None


Transformation = Annotated[
    Union[
        UppercaseTransform,
        LowercaseTransform,
        TrimTransform,
        DateFormatTransform,
        LookupTransform,
        ConcatTransform,
        SplitTransform,
        DefaultTransform,
        BooleanTransform,
    ],
    Field(discriminator="kind"),
]


# ── Configuration ───────────────────────────────────────────────────────────


class Connection(BaseModel):
    """Configured link to one external CRM account."""

    id: str
    tenant_id: str
    provider: ProviderType
    display_name: str = ""
    credentials: dict[str, str] = Field(default_factory=dict)
    environment_url: str | None = None
    webhook_secret: str | None = None
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    sync_interval_minutes: int = Field(default=15, ge=1)
    is_enabled: bool = True
    last_sync_at: datetime | None = None
    last_successful_sync_at: datetime | None = None
    last_sync_error: str | None = None


class FieldMapping(BaseModel):
    """One internal field path paired with one external field name."""

    id: str = ""
    entity_mapping_id: str = ""
    internal_field: str
    external_field: str
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    is_enabled: bool = True
    is_required: bool = False
    transformation: Transformation | None = None
    display_order: int = 0


class RelationshipMapping(BaseModel):
    """Foreign-key-like field resolved through the correspondence ledger."""

    id: str = ""
    entity_mapping_id: str = ""
    internal_field: str
    related_entity_type: InternalEntityType
    external_lookup_field: str
    external_related_entity: str
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    is_enabled: bool = True
    auto_create_related: bool = False
    sync_null_values: bool = True
    display_order: int = 0


class EntityMapping(BaseModel):
    """Pairs one external entity with one internal entity type."""

    id: str
    connection_id: str
    external_entity: str
    internal_entity_type: InternalEntityType
    display_name: str = ""
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    is_enabled: bool = True
    filter_expression: str | None = None
    external_primary_key: str = "id"
    external_modified_field: str | None = None
    identity_field: str | None = None
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    relationship_mappings: list[RelationshipMapping] = Field(default_factory=list)

    def active_field_mappings(self, direction: SyncDirection) -> list[FieldMapping]:
        """Enabled field mappings that allow ``direction``, in display order."""
        return sorted(
            (
                fm for fm in self.field_mappings
                if fm.is_enabled and fm.direction.covers(direction)
            ),
            key=lambda fm: fm.display_order,
        )

    def active_relationship_mappings(self, direction: SyncDirection) -> list[RelationshipMapping]:
        """Enabled relationship mappings that allow ``direction``, in display order."""
        return sorted(
            (
                rm for rm in self.relationship_mappings
                if rm.is_enabled and rm.direction.covers(direction)
            ),
            key=lambda rm: rm.display_order,
        )


# ── Ledger & Audit ──────────────────────────────────────────────────────────


class CorrespondenceRecord(BaseModel):
    """Durable proof that an internal record and an external record are the same thing."""

    id: str = ""
    connection_id: str
    internal_type: InternalEntityType
    internal_id: str
    external_entity: str
    external_id: str
    last_synced_at: datetime = Field(default_factory=_utcnow)
    last_sync_direction: SyncDirection
    last_sync_hash: str | None = None
    last_synced_fields: dict[str, Any] = Field(default_factory=dict)


class SyncLogEntry(BaseModel):
    """Immutable audit row for one record-level sync attempt."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    connection_id: str
    entity_mapping_id: str | None = None
    sync_id: str
    internal_type: InternalEntityType | None = None
    internal_id: str | None = None
    external_entity: str | None = None
    external_id: str | None = None
    direction: SyncDirection
    action: SyncAction
    status: SyncStatus
    changed_fields: list[str] = Field(default_factory=list)
    error_message: str | None = None
    duration_ms: int = 0
    synced_at: datetime = Field(default_factory=_utcnow)


# ── Provider Payloads ───────────────────────────────────────────────────────


class ExternalRecord(BaseModel):
    """Provider-agnostic bag of field values for one external record."""

    entity_name: str
    id: str
    fields: dict[str, Any] = Field(default_factory=dict)
    created_on: datetime | None = None
    modified_on: datetime | None = None


class UpsertResult(BaseModel):
    external_id: str
    created: bool


class OptionSetValue(BaseModel):
    value: int
    label: str


class FieldSchema(BaseModel):
    """One external field as reported by schema discovery."""

    name: str
    display_name: str = ""
    field_type: str = "string"
    is_required: bool = False
    is_read_only: bool = False
    is_custom: bool = False
    max_length: int | None = None
    lookup_entity: str | None = None
    options: list[OptionSetValue] = Field(default_factory=list)


class EntitySchema(BaseModel):
    """One external entity as reported by schema discovery."""

    name: str
    display_name: str = ""
    plural_name: str = ""
    primary_key_field: str = "id"
    primary_name_field: str | None = None
    is_custom: bool = False


class WebhookEvent(BaseModel):
    """Normalized change notification parsed from a provider webhook."""

    event_type: str
    entity_name: str
    record_id: str
    record: ExternalRecord | None = None
    event_time: datetime = Field(default_factory=_utcnow)
    raw_payload: str = ""


# ── Results ─────────────────────────────────────────────────────────────────


class SyncStats(BaseModel):
    """Aggregate per-outcome counts for a run or a log window."""

    total_processed: int = 0
    success_count: int = 0
    failed_count: int = 0
    conflict_count: int = 0
    skipped_count: int = 0
    inbound_count: int = 0
    outbound_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    deleted_count: int = 0
    linked_by_match_count: int = 0
    last_sync_at: datetime | None = None
    last_successful_sync_at: datetime | None = None


class SyncResult(BaseModel):
    """Outcome of one public orchestrator call.

    ``success`` is True only when the run completed and no record failed.
    Callers that tolerate partial success should inspect ``stats``.
    """

    success: bool
    state: SyncRunState
    failure_kind: FailureKind | None = None
    message: str = ""
    sync_id: str
    stats: SyncStats = Field(default_factory=SyncStats)
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0


class SyncProgress(BaseModel):
    """Live progress snapshot for one entity-mapping phase of a run."""

    sync_id: str
    connection_id: str
    entity_mapping_id: str | None = None
    entity_name: str = ""
    current_record: int = 0
    total_records: int = 0
    percent_complete: int = 0
    status: ProgressStatus = ProgressStatus.IN_PROGRESS
    message: str = ""
    success_count: int = 0
    failed_count: int = 0
    error_message: str | None = None
    updated_at: datetime = Field(default_factory=_utcnow)


# ── Duplicate Detection ─────────────────────────────────────────────────────


class DuplicateGroup(BaseModel):
    """Two or more records on one side sharing an identity key."""

    entity_type: InternalEntityType
    entity_name: str
    identifier: str
    side: str  # "external" or "internal"
    record_ids: list[str]


class UnlinkedMatch(BaseModel):
    """An internal and an external record sharing an identity key with no ledger row."""

    entity_type: InternalEntityType
    entity_name: str
    identifier: str
    internal_id: str
    external_id: str


class DuplicateReport(BaseModel):
    connection_id: str
    external_duplicates: list[DuplicateGroup] = Field(default_factory=list)
    internal_duplicates: list[DuplicateGroup] = Field(default_factory=list)
    unlinked_matches: list[UnlinkedMatch] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=_utcnow)

    @property
    def has_duplicates(self) -> bool:
        return bool(self.external_duplicates or self.internal_duplicates)

    @property
    def summary(self) -> str:
        return (
            f"{len(self.external_duplicates)} duplicate group(s) in CRM, "
            f"{len(self.internal_duplicates)} internal, "
            f"{len(self.unlinked_matches)} unlinked match(es)"
        )
