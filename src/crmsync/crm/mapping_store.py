"""Mapping configuration store -- validated reads and writes of sync configuration.

Loading a connection's configuration returns an immutable snapshot that the
sync engine uses for the whole run. Every mapping is validated on load and on
save, so configuration errors surface before any record is touched.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from src.crmsync.crm.errors import ConfigurationError
from src.crmsync.crm.field_mapping import default_field_mappings, validate_entity_mapping
from src.crmsync.crm.providers.factory import ProviderRegistry
from src.crmsync.crm.schemas import Connection, EntityMapping, InternalEntityType, SyncDirection
from src.crmsync.crm.store import CrmStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConnectionConfig:
    """Snapshot of one connection and its enabled, validated entity mappings."""

    connection: Connection
    entity_mappings: tuple[EntityMapping, ...]

    def get_mapping(self, entity_mapping_id: str) -> EntityMapping | None:
        for mapping in self.entity_mappings:
            if mapping.id == entity_mapping_id:
                return mapping
        return None

    def find_mapping(
        self, entity_type: InternalEntityType, external_entity: str | None = None
    ) -> EntityMapping | None:
        """First mapping for an internal type, optionally pinned to an external entity."""
        for mapping in self.entity_mappings:
            if mapping.internal_entity_type != entity_type:
                continue
            if external_entity is None or mapping.external_entity == external_entity:
                return mapping
        return None

    def effective_direction(self, mapping: EntityMapping) -> SyncDirection | None:
        """Direction allowed by both the mapping and its connection."""
        return mapping.sync_direction.intersect(self.connection.sync_direction)


class MappingConfigStore:
    """Tenant-scoped configuration access for connections and mappings.

    Args:
        tenant_id: Tenant whose configuration this is.
        store: Persistence backend.
        providers: Registry used to reject unsupported providers.
    """

    def __init__(self, tenant_id: str, store: CrmStore, providers: ProviderRegistry) -> None:
        self._tenant_id = tenant_id
        self._store = store
        self._providers = providers

    async def get_connection(self, connection_id: str) -> Connection:
        """Fetch a connection.

        Raises:
            ConfigurationError: If the connection does not exist.
        """
        connection = await self._store.get_connection(self._tenant_id, connection_id)
        if connection is None:
            raise ConfigurationError(f"CRM connection {connection_id} not found")
        return connection

    async def load_connection_config(self, connection_id: str) -> ConnectionConfig:
        """Load and validate a connection with its enabled entity mappings.

        Raises:
            ConfigurationError: If the connection is missing or disabled, its
                provider is unsupported, or any enabled mapping is invalid.
        """
        connection = await self.get_connection(connection_id)
        if not connection.is_enabled:
            raise ConfigurationError(f"CRM connection {connection_id} is disabled")
        self._providers.ensure_supported(connection)

        mappings = await self._store.list_entity_mappings(self._tenant_id, connection_id)
        enabled = []
        for mapping in mappings:
            if not mapping.is_enabled:
                continue
            validate_entity_mapping(mapping, connection.sync_direction)
            enabled.append(mapping)
        return ConnectionConfig(connection=connection, entity_mappings=tuple(enabled))

    async def get_entity_mapping(self, entity_mapping_id: str) -> EntityMapping:
        mapping = await self._store.get_entity_mapping(self._tenant_id, entity_mapping_id)
        if mapping is None:
            raise ConfigurationError(f"Entity mapping {entity_mapping_id} not found")
        return mapping

    async def register_connection(self, connection: Connection) -> Connection:
        """Validate and persist a connection.

        Raises:
            UnsupportedProviderError: If no provider is registered for its type.
            ConfigurationError: If it belongs to another tenant.
        """
        if connection.tenant_id != self._tenant_id:
            raise ConfigurationError("Connection tenant does not match the current tenant")
        self._providers.ensure_supported(connection)
        saved = await self._store.save_connection(self._tenant_id, connection)
        logger.info(
            "crm_config.connection_saved",
            tenant_id=self._tenant_id,
            connection_id=saved.id,
            provider=saved.provider.value,
        )
        return saved

    async def save_entity_mapping(self, mapping: EntityMapping) -> EntityMapping:
        """Validate and persist an entity mapping with its field and relationship mappings.

        Raises:
            ConfigurationError: If the connection is missing, the mapping is
                invalid, or another mapping already pairs the same entities.
        """
        connection = await self.get_connection(mapping.connection_id)
        validate_entity_mapping(mapping, connection.sync_direction)

        existing = await self._store.list_entity_mappings(self._tenant_id, mapping.connection_id)
        for other in existing:
            if (
                other.id != mapping.id
                and other.external_entity == mapping.external_entity
                and other.internal_entity_type == mapping.internal_entity_type
            ):
                raise ConfigurationError(
                    f"Connection {mapping.connection_id} already maps '{mapping.external_entity}' "
                    f"to {mapping.internal_entity_type.value}"
                )

        saved = await self._store.save_entity_mapping(self._tenant_id, mapping)
        logger.info(
            "crm_config.entity_mapping_saved",
            tenant_id=self._tenant_id,
            entity_mapping_id=saved.id,
            external_entity=saved.external_entity,
            field_count=len(saved.field_mappings),
        )
        return saved

    async def apply_default_field_mappings(self, entity_mapping_id: str) -> EntityMapping:
        """Add the provider's default field mappings that the mapping does not yet cover."""
        mapping = await self.get_entity_mapping(entity_mapping_id)
        connection = await self.get_connection(mapping.connection_id)

        covered_internal = {fm.internal_field for fm in mapping.field_mappings}
        covered_external = {fm.external_field for fm in mapping.field_mappings}
        next_order = max((fm.display_order for fm in mapping.field_mappings), default=-1) + 1

        additions = []
        for fm in default_field_mappings(connection.provider, mapping.internal_entity_type, mapping.id):
            if fm.internal_field in covered_internal or fm.external_field in covered_external:
                continue
            direction = mapping.sync_direction.intersect(fm.direction) or mapping.sync_direction
            additions.append(fm.model_copy(update={"direction": direction, "display_order": next_order}))
            next_order += 1

        if not additions:
            return mapping
        updated = mapping.model_copy(update={"field_mappings": [*mapping.field_mappings, *additions]})
        return await self.save_entity_mapping(updated)
