"""CRM sync repository -- async SQLAlchemy implementation of CrmStore.

Provides CrmRepository with the session_factory callable pattern. Handles
serialization between Pydantic schemas and SQLAlchemy models for
connections, entity/field/relationship mappings, ledger rows and sync logs.

All methods take tenant_id as first argument for tenant-scoped queries.
Transformations are stored as (kind, JSON config) and parsed into typed
variants once, when a mapping is loaded. Database errors are translated to
PersistenceError so the sync engine can fail the affected record only.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crmsync.crm.errors import PersistenceError
from src.crmsync.crm.models import (
    CrmConnectionModel,
    CrmEntityMappingModel,
    CrmExternalIdModel,
    CrmFieldMappingModel,
    CrmRelationshipMappingModel,
    CrmSyncLogModel,
)
from src.crmsync.crm.schemas import (
    Connection,
    CorrespondenceRecord,
    EntityMapping,
    FieldMapping,
    InternalEntityType,
    ProviderType,
    RelationshipMapping,
    SyncAction,
    SyncDirection,
    SyncLogEntry,
    SyncStatus,
)
from src.crmsync.crm.store import CrmStore
from src.crmsync.crm.transformations import dump_transformation, parse_transformation

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _uuid_or_none(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


def _model_to_connection(model: CrmConnectionModel) -> Connection:
    """Convert CrmConnectionModel to Connection schema."""
    return Connection(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        provider=ProviderType(model.provider),
        display_name=model.display_name or "",
        credentials=model.credentials or {},
        environment_url=model.environment_url,
        webhook_secret=model.webhook_secret,
        sync_direction=SyncDirection(model.sync_direction),
        sync_interval_minutes=model.sync_interval_minutes,
        is_enabled=model.is_enabled,
        last_sync_at=model.last_sync_at,
        last_successful_sync_at=model.last_successful_sync_at,
        last_sync_error=model.last_sync_error,
    )


def _model_to_field_mapping(model: CrmFieldMappingModel) -> FieldMapping:
    """Convert CrmFieldMappingModel to FieldMapping, parsing the transformation."""
    return FieldMapping(
        id=str(model.id),
        entity_mapping_id=str(model.entity_mapping_id),
        internal_field=model.internal_field,
        external_field=model.external_field,
        direction=SyncDirection(model.direction),
        is_enabled=model.is_enabled,
        is_required=model.is_required,
        transformation=parse_transformation(model.transformation_type, model.transformation_config),
        display_order=model.display_order,
    )


def _model_to_relationship_mapping(model: CrmRelationshipMappingModel) -> RelationshipMapping:
    """Convert CrmRelationshipMappingModel to RelationshipMapping schema."""
    return RelationshipMapping(
        id=str(model.id),
        entity_mapping_id=str(model.entity_mapping_id),
        internal_field=model.internal_field,
        related_entity_type=InternalEntityType(model.related_entity_type),
        external_lookup_field=model.external_lookup_field,
        external_related_entity=model.external_related_entity,
        direction=SyncDirection(model.direction),
        is_enabled=model.is_enabled,
        auto_create_related=model.auto_create_related,
        sync_null_values=model.sync_null_values,
        display_order=model.display_order,
    )


def _model_to_entity_mapping(
    model: CrmEntityMappingModel,
    fields: list[CrmFieldMappingModel],
    relationships: list[CrmRelationshipMappingModel],
) -> EntityMapping:
    """Convert CrmEntityMappingModel plus its children to an EntityMapping."""
    return EntityMapping(
        id=str(model.id),
        connection_id=str(model.connection_id),
        external_entity=model.external_entity,
        internal_entity_type=InternalEntityType(model.internal_entity_type),
        display_name=model.display_name or "",
        sync_direction=SyncDirection(model.sync_direction),
        is_enabled=model.is_enabled,
        filter_expression=model.filter_expression,
        external_primary_key=model.external_primary_key,
        external_modified_field=model.external_modified_field,
        identity_field=model.identity_field,
        field_mappings=[_model_to_field_mapping(f) for f in fields],
        relationship_mappings=[_model_to_relationship_mapping(r) for r in relationships],
    )


def _model_to_correspondence(model: CrmExternalIdModel) -> CorrespondenceRecord:
    """Convert CrmExternalIdModel to CorrespondenceRecord schema."""
    return CorrespondenceRecord(
        id=str(model.id),
        connection_id=str(model.connection_id),
        internal_type=InternalEntityType(model.internal_type),
        internal_id=model.internal_id,
        external_entity=model.external_entity,
        external_id=model.external_id,
        last_synced_at=model.last_synced_at,
        last_sync_direction=SyncDirection(model.last_sync_direction),
        last_sync_hash=model.last_sync_hash,
        last_synced_fields=model.last_synced_fields or {},
    )


def _model_to_log(model: CrmSyncLogModel) -> SyncLogEntry:
    """Convert CrmSyncLogModel to SyncLogEntry schema."""
    return SyncLogEntry(
        id=str(model.id),
        connection_id=str(model.connection_id),
        entity_mapping_id=str(model.entity_mapping_id) if model.entity_mapping_id else None,
        sync_id=model.sync_id,
        internal_type=InternalEntityType(model.internal_type) if model.internal_type else None,
        internal_id=model.internal_id,
        external_entity=model.external_entity,
        external_id=model.external_id,
        direction=SyncDirection(model.direction),
        action=SyncAction(model.action),
        status=SyncStatus(model.status),
        changed_fields=model.changed_fields or [],
        error_message=model.error_message,
        duration_ms=model.duration_ms or 0,
        synced_at=model.synced_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class CrmRepository(CrmStore):
    """Async CRUD operations for CRM sync configuration, ledger and logs.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Connections ─────────────────────────────────────────────────────────

    async def get_connection(self, tenant_id: str, connection_id: str) -> Connection | None:
        async for session in self._session_factory():
            stmt = select(CrmConnectionModel).where(
                CrmConnectionModel.tenant_id == uuid.UUID(tenant_id),
                CrmConnectionModel.id == uuid.UUID(connection_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_connection(model)

    async def list_connections(self, tenant_id: str, enabled_only: bool = False) -> list[Connection]:
        async for session in self._session_factory():
            stmt = select(CrmConnectionModel).where(
                CrmConnectionModel.tenant_id == uuid.UUID(tenant_id),
            )
            if enabled_only:
                stmt = stmt.where(CrmConnectionModel.is_enabled.is_(True))
            result = await session.execute(stmt)
            return [_model_to_connection(m) for m in result.scalars().all()]

    async def save_connection(self, tenant_id: str, connection: Connection) -> Connection:
        """Insert a new connection (empty id) or update an existing one."""
        values = {
            "provider": connection.provider.value,
            "display_name": connection.display_name,
            "credentials": connection.credentials,
            "environment_url": connection.environment_url,
            "webhook_secret": connection.webhook_secret,
            "sync_direction": connection.sync_direction.value,
            "sync_interval_minutes": connection.sync_interval_minutes,
            "is_enabled": connection.is_enabled,
        }
        try:
            async for session in self._session_factory():
                if connection.id:
                    model = await session.get(CrmConnectionModel, uuid.UUID(connection.id))
                    if model is None or str(model.tenant_id) != tenant_id:
                        raise PersistenceError(f"Connection {connection.id} not found")
                    for key, value in values.items():
                        setattr(model, key, value)
                else:
                    model = CrmConnectionModel(tenant_id=uuid.UUID(tenant_id), **values)
                    session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_connection(model)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to save connection: {exc}") from exc

    async def update_connection_sync_state(
        self,
        tenant_id: str,
        connection_id: str,
        *,
        last_sync_at: datetime,
        last_sync_error: str | None,
        last_successful_sync_at: datetime | None = None,
    ) -> None:
        values: dict = {"last_sync_at": last_sync_at, "last_sync_error": last_sync_error}
        if last_successful_sync_at is not None:
            values["last_successful_sync_at"] = last_successful_sync_at
        try:
            async for session in self._session_factory():
                stmt = (
                    update(CrmConnectionModel)
                    .where(
                        CrmConnectionModel.tenant_id == uuid.UUID(tenant_id),
                        CrmConnectionModel.id == uuid.UUID(connection_id),
                    )
                    .values(**values)
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to update sync state: {exc}") from exc

    # ── Mappings ────────────────────────────────────────────────────────────

    async def _load_mappings(
        self, session: AsyncSession, tenant_id: str, models: list[CrmEntityMappingModel]
    ) -> list[EntityMapping]:
        if not models:
            return []
        ids = [m.id for m in models]
        tenant_uuid = uuid.UUID(tenant_id)

        field_rows = await session.execute(
            select(CrmFieldMappingModel).where(
                CrmFieldMappingModel.tenant_id == tenant_uuid,
                CrmFieldMappingModel.entity_mapping_id.in_(ids),
            ).order_by(CrmFieldMappingModel.display_order)
        )
        rel_rows = await session.execute(
            select(CrmRelationshipMappingModel).where(
                CrmRelationshipMappingModel.tenant_id == tenant_uuid,
                CrmRelationshipMappingModel.entity_mapping_id.in_(ids),
            ).order_by(CrmRelationshipMappingModel.display_order)
        )
        fields_by_mapping: dict[uuid.UUID, list[CrmFieldMappingModel]] = {}
        for f in field_rows.scalars().all():
            fields_by_mapping.setdefault(f.entity_mapping_id, []).append(f)
        rels_by_mapping: dict[uuid.UUID, list[CrmRelationshipMappingModel]] = {}
        for r in rel_rows.scalars().all():
            rels_by_mapping.setdefault(r.entity_mapping_id, []).append(r)

        return [
            _model_to_entity_mapping(m, fields_by_mapping.get(m.id, []), rels_by_mapping.get(m.id, []))
            for m in models
        ]

    async def list_entity_mappings(self, tenant_id: str, connection_id: str) -> list[EntityMapping]:
        async for session in self._session_factory():
            stmt = select(CrmEntityMappingModel).where(
                CrmEntityMappingModel.tenant_id == uuid.UUID(tenant_id),
                CrmEntityMappingModel.connection_id == uuid.UUID(connection_id),
            ).order_by(CrmEntityMappingModel.created_at)
            result = await session.execute(stmt)
            return await self._load_mappings(session, tenant_id, list(result.scalars().all()))

    async def get_entity_mapping(self, tenant_id: str, entity_mapping_id: str) -> EntityMapping | None:
        async for session in self._session_factory():
            stmt = select(CrmEntityMappingModel).where(
                CrmEntityMappingModel.tenant_id == uuid.UUID(tenant_id),
                CrmEntityMappingModel.id == uuid.UUID(entity_mapping_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            mappings = await self._load_mappings(session, tenant_id, [model])
            return mappings[0]

    async def save_entity_mapping(self, tenant_id: str, mapping: EntityMapping) -> EntityMapping:
        """Upsert the entity mapping and replace its field/relationship mappings."""
        tenant_uuid = uuid.UUID(tenant_id)
        values = {
            "connection_id": uuid.UUID(mapping.connection_id),
            "external_entity": mapping.external_entity,
            "internal_entity_type": mapping.internal_entity_type.value,
            "display_name": mapping.display_name,
            "sync_direction": mapping.sync_direction.value,
            "is_enabled": mapping.is_enabled,
            "filter_expression": mapping.filter_expression,
            "external_primary_key": mapping.external_primary_key,
            "external_modified_field": mapping.external_modified_field,
            "identity_field": mapping.identity_field,
        }
        try:
            async for session in self._session_factory():
                if mapping.id:
                    model = await session.get(CrmEntityMappingModel, uuid.UUID(mapping.id))
                    if model is None or model.tenant_id != tenant_uuid:
                        raise PersistenceError(f"Entity mapping {mapping.id} not found")
                    for key, value in values.items():
                        setattr(model, key, value)
                else:
                    model = CrmEntityMappingModel(tenant_id=tenant_uuid, **values)
                    session.add(model)
                await session.flush()

                await session.execute(
                    delete(CrmFieldMappingModel).where(
                        CrmFieldMappingModel.tenant_id == tenant_uuid,
                        CrmFieldMappingModel.entity_mapping_id == model.id,
                    )
                )
                await session.execute(
                    delete(CrmRelationshipMappingModel).where(
                        CrmRelationshipMappingModel.tenant_id == tenant_uuid,
                        CrmRelationshipMappingModel.entity_mapping_id == model.id,
                    )
                )
                for fm in mapping.field_mappings:
                    kind, config = dump_transformation(fm.transformation)
                    session.add(CrmFieldMappingModel(
                        tenant_id=tenant_uuid,
                        entity_mapping_id=model.id,
                        internal_field=fm.internal_field,
                        external_field=fm.external_field,
                        direction=fm.direction.value,
                        is_enabled=fm.is_enabled,
                        is_required=fm.is_required,
                        transformation_type=kind,
                        transformation_config=config,
                        display_order=fm.display_order,
                    ))
                for rm in mapping.relationship_mappings:
                    session.add(CrmRelationshipMappingModel(
                        tenant_id=tenant_uuid,
                        entity_mapping_id=model.id,
                        internal_field=rm.internal_field,
                        related_entity_type=rm.related_entity_type.value,
                        external_lookup_field=rm.external_lookup_field,
                        external_related_entity=rm.external_related_entity,
                        direction=rm.direction.value,
                        is_enabled=rm.is_enabled,
                        auto_create_related=rm.auto_create_related,
                        sync_null_values=rm.sync_null_values,
                        display_order=rm.display_order,
                    ))
                await session.commit()
                mapping_id = str(model.id)
        except IntegrityError as exc:
            raise PersistenceError(
                f"An entity mapping for '{mapping.external_entity}' <-> "
                f"{mapping.internal_entity_type.value} already exists on this connection"
            ) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to save entity mapping: {exc}") from exc

        saved = await self.get_entity_mapping(tenant_id, mapping_id)
        if saved is None:
            raise PersistenceError(f"Entity mapping {mapping_id} vanished after save")
        return saved

    # ── Correspondence Ledger ───────────────────────────────────────────────

    async def get_correspondence_by_internal(
        self,
        tenant_id: str,
        connection_id: str,
        internal_type: InternalEntityType,
        internal_id: str,
    ) -> CorrespondenceRecord | None:
        try:
            async for session in self._session_factory():
                stmt = select(CrmExternalIdModel).where(
                    CrmExternalIdModel.tenant_id == uuid.UUID(tenant_id),
                    CrmExternalIdModel.connection_id == uuid.UUID(connection_id),
                    CrmExternalIdModel.internal_type == internal_type.value,
                    CrmExternalIdModel.internal_id == internal_id,
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                return _model_to_correspondence(model) if model else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Ledger lookup failed: {exc}") from exc

    async def get_correspondence_by_external(
        self,
        tenant_id: str,
        connection_id: str,
        external_entity: str,
        external_id: str,
    ) -> CorrespondenceRecord | None:
        try:
            async for session in self._session_factory():
                stmt = select(CrmExternalIdModel).where(
                    CrmExternalIdModel.tenant_id == uuid.UUID(tenant_id),
                    CrmExternalIdModel.connection_id == uuid.UUID(connection_id),
                    CrmExternalIdModel.external_entity == external_entity,
                    CrmExternalIdModel.external_id == external_id,
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                return _model_to_correspondence(model) if model else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Ledger lookup failed: {exc}") from exc

    async def upsert_correspondence(self, tenant_id: str, record: CorrespondenceRecord) -> CorrespondenceRecord:
        """INSERT ... ON CONFLICT (internal key) DO UPDATE, returning the row.

        A conflict on the external-key constraint is not handled by the
        upsert and surfaces as PersistenceError.
        """
        row = {
            "tenant_id": uuid.UUID(tenant_id),
            "connection_id": uuid.UUID(record.connection_id),
            "internal_type": record.internal_type.value,
            "internal_id": record.internal_id,
            "external_entity": record.external_entity,
            "external_id": record.external_id,
            "last_synced_at": record.last_synced_at,
            "last_sync_direction": record.last_sync_direction.value,
            "last_sync_hash": record.last_sync_hash,
            "last_synced_fields": record.last_synced_fields,
        }
        stmt = pg_insert(CrmExternalIdModel).values(**row)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_crm_external_ids_internal",
            set_={
                "external_entity": stmt.excluded.external_entity,
                "external_id": stmt.excluded.external_id,
                "last_synced_at": stmt.excluded.last_synced_at,
                "last_sync_direction": stmt.excluded.last_sync_direction,
                "last_sync_hash": stmt.excluded.last_sync_hash,
                "last_synced_fields": stmt.excluded.last_synced_fields,
            },
        ).returning(CrmExternalIdModel)
        try:
            async for session in self._session_factory():
                result = await session.scalars(
                    stmt, execution_options={"populate_existing": True}
                )
                model = result.one()
                await session.commit()
                return _model_to_correspondence(model)
        except IntegrityError as exc:
            raise PersistenceError(
                f"{record.external_entity} {record.external_id} is already linked "
                f"to another {record.internal_type.value} on this connection"
            ) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Ledger write failed: {exc}") from exc

    async def list_correspondences(
        self,
        tenant_id: str,
        connection_id: str,
        internal_type: InternalEntityType | None = None,
    ) -> list[CorrespondenceRecord]:
        async for session in self._session_factory():
            stmt = select(CrmExternalIdModel).where(
                CrmExternalIdModel.tenant_id == uuid.UUID(tenant_id),
                CrmExternalIdModel.connection_id == uuid.UUID(connection_id),
            )
            if internal_type is not None:
                stmt = stmt.where(CrmExternalIdModel.internal_type == internal_type.value)
            result = await session.execute(stmt)
            return [_model_to_correspondence(m) for m in result.scalars().all()]

    # ── Sync Log ────────────────────────────────────────────────────────────

    async def append_sync_log(self, tenant_id: str, entry: SyncLogEntry) -> SyncLogEntry:
        try:
            async for session in self._session_factory():
                model = CrmSyncLogModel(
                    tenant_id=uuid.UUID(tenant_id),
                    connection_id=uuid.UUID(entry.connection_id),
                    entity_mapping_id=_uuid_or_none(entry.entity_mapping_id),
                    sync_id=entry.sync_id,
                    internal_type=entry.internal_type.value if entry.internal_type else None,
                    internal_id=entry.internal_id,
                    external_entity=entry.external_entity,
                    external_id=entry.external_id,
                    direction=entry.direction.value,
                    action=entry.action.value,
                    status=entry.status.value,
                    changed_fields=entry.changed_fields,
                    error_message=entry.error_message,
                    duration_ms=entry.duration_ms,
                    synced_at=entry.synced_at,
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_log(model)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Sync log write failed: {exc}") from exc

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
        async for session in self._session_factory():
            stmt = select(CrmSyncLogModel).where(
                CrmSyncLogModel.tenant_id == uuid.UUID(tenant_id),
                CrmSyncLogModel.connection_id == uuid.UUID(connection_id),
            )
            if status is not None:
                stmt = stmt.where(CrmSyncLogModel.status == status.value)
            if since is not None:
                stmt = stmt.where(CrmSyncLogModel.synced_at >= since)
            if sync_id is not None:
                stmt = stmt.where(CrmSyncLogModel.sync_id == sync_id)
            stmt = stmt.order_by(CrmSyncLogModel.synced_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_log(m) for m in result.scalars().all()]

    async def delete_sync_logs(
        self,
        tenant_id: str,
        connection_id: str,
        older_than: datetime | None = None,
    ) -> int:
        try:
            async for session in self._session_factory():
                stmt = delete(CrmSyncLogModel).where(
                    CrmSyncLogModel.tenant_id == uuid.UUID(tenant_id),
                    CrmSyncLogModel.connection_id == uuid.UUID(connection_id),
                )
                if older_than is not None:
                    stmt = stmt.where(CrmSyncLogModel.synced_at < older_than)
                result = await session.execute(stmt)
                await session.commit()
                logger.info(
                    "crm_repository.sync_logs_deleted",
                    connection_id=connection_id,
                    deleted=result.rowcount,
                )
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Sync log cleanup failed: {exc}") from exc
