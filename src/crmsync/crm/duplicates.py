"""Read-only duplicate detection across a connection's entity mappings.

For every enabled mapping with an identity field (e.g. email), records on
each side are grouped by their normalized identity key:
- Two or more external records sharing a key form an external duplicate group
- Two or more internal records sharing a key form an internal duplicate group
- A key present on both sides where neither record is linked yields an
  UnlinkedMatch, a pair the next sync links by identity instead of
  creating a counterpart (inbound matches internal records, outbound
  looks the key up in the CRM)

Nothing is written; the report is advisory.
"""

from __future__ import annotations

from collections import defaultdict

import structlog

from src.crmsync.crm.accessors import get_value
from src.crmsync.crm.field_mapping import identity_fields, normalize_identity
from src.crmsync.crm.ledger import CorrespondenceLedger
from src.crmsync.crm.mapping_store import MappingConfigStore
from src.crmsync.crm.providers.base import CRMProvider
from src.crmsync.crm.providers.factory import ProviderRegistry
from src.crmsync.crm.schemas import (
    Connection,
    DuplicateGroup,
    DuplicateReport,
    EntityMapping,
    UnlinkedMatch,
)
from src.crmsync.crm.store import CrmStore, InternalEntityStore

logger = structlog.get_logger(__name__)


class DuplicateDetector:
    """Find duplicate and matchable-but-unlinked records for one tenant.

    Args:
        tenant_id: Tenant to inspect.
        store: CRM configuration store.
        entities: Internal entity store.
        providers: Provider registry used to read external records.
        ledger: Correspondence ledger used to tell linked from unlinked records.
    """

    def __init__(
        self,
        tenant_id: str,
        store: CrmStore,
        entities: InternalEntityStore,
        providers: ProviderRegistry,
        ledger: CorrespondenceLedger,
    ) -> None:
        self._tenant_id = tenant_id
        self._entities = entities
        self._providers = providers
        self._ledger = ledger
        self._config = MappingConfigStore(tenant_id, store, providers)

    async def detect(self, connection_id: str, entity_mapping_id: str | None = None) -> DuplicateReport:
        """Build a duplicate report for a connection, or for one of its mappings.

        Raises:
            ConfigurationError: If the connection or the named mapping is missing.
            AuthenticationError / ProviderError: If the external read fails.
        """
        config = await self._config.load_connection_config(connection_id)
        mappings = list(config.entity_mappings)
        if entity_mapping_id is not None:
            mappings = [m for m in mappings if m.id == entity_mapping_id]
            if not mappings:
                mappings = [await self._config.get_entity_mapping(entity_mapping_id)]

        provider = self._providers.get_provider(config.connection.provider)
        report = DuplicateReport(connection_id=connection_id)
        for mapping in mappings:
            identity = identity_fields(mapping)
            if identity is None:
                logger.debug("crm_duplicates.no_identity_field", entity_mapping_id=mapping.id)
                continue
            await self._detect_mapping(report, config.connection, provider, mapping, identity)

        logger.info(
            "crm_duplicates.report_built",
            tenant_id=self._tenant_id,
            connection_id=connection_id,
            summary=report.summary,
        )
        return report

    async def _detect_mapping(
        self,
        report: DuplicateReport,
        connection: Connection,
        provider: CRMProvider,
        mapping: EntityMapping,
        identity: tuple[str, str],
    ) -> None:
        internal_path, external_field = identity
        entity_type = mapping.internal_entity_type

        external_groups: dict[str, list[str]] = defaultdict(list)
        async for record in provider.read_changed(
            connection,
            mapping.external_entity,
            filter_expression=mapping.filter_expression,
            fields=[external_field],
        ):
            key = normalize_identity(record.fields.get(external_field))
            if key is not None:
                external_groups[key].append(record.id)

        internal_groups: dict[str, list[str]] = defaultdict(list)
        for entity in await self._entities.list_entities(self._tenant_id, entity_type):
            key = normalize_identity(get_value(entity, entity_type, internal_path))
            if key is not None:
                internal_groups[key].append(entity.id)

        links = await self._ledger.list_links(connection.id, entity_type)
        linked_internal = {link.internal_id for link in links}
        linked_external = {
            link.external_id for link in links if link.external_entity == mapping.external_entity
        }

        for key, ids in external_groups.items():
            if len(ids) > 1:
                report.external_duplicates.append(DuplicateGroup(
                    entity_type=entity_type,
                    entity_name=mapping.external_entity,
                    identifier=key,
                    side="external",
                    record_ids=ids,
                ))
        for key, ids in internal_groups.items():
            if len(ids) > 1:
                report.internal_duplicates.append(DuplicateGroup(
                    entity_type=entity_type,
                    entity_name=mapping.external_entity,
                    identifier=key,
                    side="internal",
                    record_ids=ids,
                ))

        for key, external_ids in external_groups.items():
            internal_ids = internal_groups.get(key)
            if not internal_ids:
                continue
            internal_id = next((i for i in internal_ids if i not in linked_internal), None)
            external_id = next((e for e in external_ids if e not in linked_external), None)
            if internal_id is None or external_id is None:
                continue
            report.unlinked_matches.append(UnlinkedMatch(
                entity_type=entity_type,
                entity_name=mapping.external_entity,
                identifier=key,
                internal_id=internal_id,
                external_id=external_id,
            ))
