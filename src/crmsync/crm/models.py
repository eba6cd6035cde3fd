"""CRM sync persistence models -- tenant-scoped tables for configuration, ledger and audit.

Six SQLAlchemy models using TenantBase for schema_translate_map isolation:
- CrmConnectionModel: One configured link to an external CRM account
- CrmEntityMappingModel: External entity <-> internal entity type pairing
- CrmFieldMappingModel: Internal field path <-> external field, with transformation
- CrmRelationshipMappingModel: Foreign-key-like field resolved through the ledger
- CrmExternalIdModel: The correspondence ledger (unique on both sides)
- CrmSyncLogModel: Append-only per-record audit trail

Mappings reference their parents by ID without FK constraints (application-level
referential integrity via repository, consistent with the tenant-schema RLS setup).
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.crmsync.core.database import TenantBase


class CrmConnectionModel(TenantBase):
    """Configured link to one external CRM account.

    Credentials are stored as an opaque JSON map; the sync core never
    inspects them, only the provider for the connection's type does.
    """

    __tablename__ = "crm_connections"
    __table_args__ = (
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    credentials: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    environment_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(500), nullable=True)
    sync_direction: Mapped[str] = mapped_column(
        String(20), default="bidirectional", server_default=text("'bidirectional'")
    )
    sync_interval_minutes: Mapped[int] = mapped_column(
        Integer, default=15, server_default=text("15")
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_successful_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class CrmEntityMappingModel(TenantBase):
    """Pairs one external entity name with one internal entity type."""

    __tablename__ = "crm_entity_mappings"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "connection_id",
            "external_entity",
            "internal_entity_type",
            name="uq_crm_entity_mapping",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    connection_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_entity: Mapped[str] = mapped_column(String(200), nullable=False)
    internal_entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    sync_direction: Mapped[str] = mapped_column(
        String(20), default="bidirectional", server_default=text("'bidirectional'")
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    filter_expression: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_primary_key: Mapped[str] = mapped_column(
        String(200), default="id", server_default=text("'id'")
    )
    external_modified_field: Mapped[str | None] = mapped_column(String(200), nullable=True)
    identity_field: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class CrmFieldMappingModel(TenantBase):
    """Internal field path paired with an external field name.

    The transformation is stored as a kind name plus a JSON config and
    parsed into a typed variant when the mapping is loaded.
    """

    __tablename__ = "crm_field_mappings"
    __table_args__ = (
        Index("idx_crm_field_mappings_entity_mapping", "tenant_id", "entity_mapping_id"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_mapping_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    internal_field: Mapped[str] = mapped_column(String(200), nullable=False)
    external_field: Mapped[str] = mapped_column(String(200), nullable=False)
    direction: Mapped[str] = mapped_column(
        String(20), default="bidirectional", server_default=text("'bidirectional'")
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    is_required: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    transformation_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    transformation_config: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))


class CrmRelationshipMappingModel(TenantBase):
    """Foreign-key-like internal field resolved through the correspondence ledger."""

    __tablename__ = "crm_relationship_mappings"
    __table_args__ = (
        Index("idx_crm_relationship_mappings_entity_mapping", "tenant_id", "entity_mapping_id"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_mapping_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    internal_field: Mapped[str] = mapped_column(String(200), nullable=False)
    related_entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    external_lookup_field: Mapped[str] = mapped_column(String(200), nullable=False)
    external_related_entity: Mapped[str] = mapped_column(String(200), nullable=False)
    direction: Mapped[str] = mapped_column(
        String(20), default="bidirectional", server_default=text("'bidirectional'")
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    auto_create_related: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    sync_null_values: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    display_order: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))


class CrmExternalIdModel(TenantBase):
    """Correspondence ledger row: internal record <-> external record.

    Unique on both the internal key and the external key per connection;
    the only source of truth for whether a record has ever been synced.
    """

    __tablename__ = "crm_external_ids"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "connection_id",
            "internal_type",
            "internal_id",
            name="uq_crm_external_ids_internal",
        ),
        UniqueConstraint(
            "tenant_id",
            "connection_id",
            "external_entity",
            "external_id",
            name="uq_crm_external_ids_external",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    connection_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    internal_type: Mapped[str] = mapped_column(String(20), nullable=False)
    internal_id: Mapped[str] = mapped_column(String(100), nullable=False)
    external_entity: Mapped[str] = mapped_column(String(200), nullable=False)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    last_sync_direction: Mapped[str] = mapped_column(String(20), nullable=False)
    last_sync_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_synced_fields: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )


class CrmSyncLogModel(TenantBase):
    """Append-only audit row for one record-level sync attempt."""

    __tablename__ = "crm_sync_logs"
    __table_args__ = (
        Index("idx_crm_sync_logs_connection_synced", "tenant_id", "connection_id", "synced_at"),
        Index("idx_crm_sync_logs_sync_id", "tenant_id", "sync_id"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    connection_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_mapping_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    sync_id: Mapped[str] = mapped_column(String(32), nullable=False)
    internal_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    internal_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    external_entity: Mapped[str | None] = mapped_column(String(200), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_fields: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
