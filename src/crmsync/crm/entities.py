"""Internal entity repository -- SQLAlchemy implementation of InternalEntityStore.

Maps the tenant-schema User/Company/Location tables to the Pydantic entity
models in accessors.py. Reference columns (company_id, location_id) are
UUIDs in the database and strings on the entity models.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crmsync.crm.accessors import CUSTOM_FIELDS_PREFIX, ENTITY_MODELS, InternalEntity
from src.crmsync.crm.errors import ConfigurationError, PersistenceError
from src.crmsync.crm.schemas import InternalEntityType
from src.crmsync.crm.store import InternalEntityStore
from src.crmsync.models.tenant import Company, Location, User

logger = structlog.get_logger(__name__)

_ORM_MODELS: dict[InternalEntityType, type] = {
    InternalEntityType.USER: User,
    InternalEntityType.COMPANY: Company,
    InternalEntityType.LOCATION: Location,
}

_REFERENCE_COLUMNS = {"company_id", "location_id"}


def _entity_columns(entity_type: InternalEntityType) -> list[str]:
    """Entity model fields persisted as plain columns."""
    return [
        name for name in ENTITY_MODELS[entity_type].model_fields
        if name not in ("id", "custom_fields")
    ]


def _to_column(name: str, value: Any) -> Any:
    if name in _REFERENCE_COLUMNS:
        return uuid.UUID(value) if value else None
    return value


def _model_to_entity(entity_type: InternalEntityType, model: Any) -> InternalEntity:
    data: dict[str, Any] = {"id": str(model.id), "custom_fields": dict(model.custom_fields or {})}
    for name in _entity_columns(entity_type):
        value = getattr(model, name)
        data[name] = str(value) if name in _REFERENCE_COLUMNS and value is not None else value
    return ENTITY_MODELS[entity_type](**data)


class EntityRepository(InternalEntityStore):
    """Async access to internal users, companies and locations.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _orm(entity_type: InternalEntityType) -> type:
        return _ORM_MODELS[entity_type]

    async def get_entity(
        self, tenant_id: str, entity_type: InternalEntityType, entity_id: str
    ) -> InternalEntity | None:
        orm = self._orm(entity_type)
        try:
            entity_uuid = uuid.UUID(entity_id)
        except ValueError:
            return None
        async for session in self._session_factory():
            stmt = select(orm).where(orm.tenant_id == uuid.UUID(tenant_id), orm.id == entity_uuid)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_entity(entity_type, model) if model else None

    async def list_entities(self, tenant_id: str, entity_type: InternalEntityType) -> list[InternalEntity]:
        orm = self._orm(entity_type)
        async for session in self._session_factory():
            stmt = select(orm).where(orm.tenant_id == uuid.UUID(tenant_id)).order_by(orm.created_at)
            result = await session.execute(stmt)
            return [_model_to_entity(entity_type, m) for m in result.scalars().all()]

    async def find_by_field(
        self, tenant_id: str, entity_type: InternalEntityType, path: str, value: str
    ) -> list[InternalEntity]:
        """Case-insensitive equality match on a plain column or a custom field.

        Raises:
            ConfigurationError: If ``path`` is neither a plain column nor a
                ``custom_fields.<key>`` path.
        """
        orm = self._orm(entity_type)
        if path.startswith(CUSTOM_FIELDS_PREFIX):
            column = orm.custom_fields[path[len(CUSTOM_FIELDS_PREFIX):]].as_string()
        elif path in _entity_columns(entity_type):
            column = getattr(orm, path)
        else:
            raise ConfigurationError(f"Cannot match {entity_type.value} records on '{path}'")
        async for session in self._session_factory():
            stmt = (
                select(orm)
                .where(orm.tenant_id == uuid.UUID(tenant_id), func.lower(column) == value.strip().lower())
                .order_by(orm.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_entity(entity_type, m) for m in result.scalars().all()]

    async def create_entity(
        self, tenant_id: str, entity_type: InternalEntityType, entity: InternalEntity
    ) -> str:
        orm = self._orm(entity_type)
        values = {
            name: _to_column(name, getattr(entity, name)) for name in _entity_columns(entity_type)
        }
        try:
            async for session in self._session_factory():
                model = orm(
                    tenant_id=uuid.UUID(tenant_id),
                    custom_fields=dict(entity.custom_fields),
                    **values,
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                logger.info(
                    "entity_repository.created",
                    tenant_id=tenant_id,
                    entity_type=entity_type.value,
                    entity_id=str(model.id),
                )
                return str(model.id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to create {entity_type.value}: {exc}") from exc

    async def save_entity(
        self, tenant_id: str, entity_type: InternalEntityType, entity: InternalEntity
    ) -> None:
        orm = self._orm(entity_type)
        try:
            async for session in self._session_factory():
                stmt = select(orm).where(
                    orm.tenant_id == uuid.UUID(tenant_id),
                    orm.id == uuid.UUID(entity.id),
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                if model is None:
                    raise PersistenceError(f"{entity_type.value} {entity.id} not found")
                for name in _entity_columns(entity_type):
                    setattr(model, name, _to_column(name, getattr(entity, name)))
                model.custom_fields = dict(entity.custom_fields)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to save {entity_type.value} {entity.id}: {exc}") from exc
