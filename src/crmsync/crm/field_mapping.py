"""Field mapping application, change detection and default mappings.

Defines:
- snapshot_outbound()/fingerprint(): the last-known state stored on ledger rows
- changed_paths(): delta between a current snapshot and the stored one
- build_outbound_payload(): internal entity -> external field dict (transformed)
- read_inbound_values()/apply_inbound_values(): external record -> internal entity
- validate_entity_mapping(): configuration-time checks for one entity mapping
- DEFAULT_FIELD_MAPPINGS / default_field_mappings(): provider-specific starter mappings
- DEFAULT_IDENTITY_FIELDS / identity_fields(): identity key used for matching
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic_core import to_jsonable_python

from src.crmsync.crm.accessors import InternalEntity, get_accessor
from src.crmsync.crm.errors import ConfigurationError, RecordValidationError
from src.crmsync.crm.schemas import (
    EntityMapping,
    ExternalRecord,
    FieldMapping,
    InternalEntityType,
    ProviderType,
    SyncDirection,
)
from src.crmsync.crm.transformations import apply


# ── Default Field Mappings ─────────────────────────────────────────────────
# (internal field path, external field name) pairs offered when an entity
# mapping is first created. All default to bidirectional.

_GENERIC_DEFAULTS: dict[InternalEntityType, list[tuple[str, str]]] = {
    InternalEntityType.USER: [
        ("first_name", "first_name"),
        ("last_name", "last_name"),
        ("email", "email"),
    ],
    InternalEntityType.COMPANY: [
        ("title", "name"),
    ],
    InternalEntityType.LOCATION: [
        ("title", "name"),
        ("address", "address"),
        ("city", "city"),
    ],
}

DEFAULT_FIELD_MAPPINGS: dict[ProviderType, dict[InternalEntityType, list[tuple[str, str]]]] = {
    ProviderType.DYNAMICS365: {
        InternalEntityType.USER: [
            ("first_name", "firstname"),
            ("last_name", "lastname"),
            ("email", "emailaddress1"),
            ("phone_number", "telephone1"),
            ("title", "jobtitle"),
        ],
        InternalEntityType.COMPANY: [
            ("title", "name"),
            ("description", "description"),
            ("website", "websiteurl"),
        ],
        InternalEntityType.LOCATION: [
            ("title", "name"),
            ("address", "address1_line1"),
            ("city", "address1_city"),
            ("state", "address1_stateorprovince"),
            ("zip_code", "address1_postalcode"),
        ],
    },
    ProviderType.HUBSPOT: {
        InternalEntityType.USER: [
            ("first_name", "firstname"),
            ("last_name", "lastname"),
            ("email", "email"),
            ("phone_number", "phone"),
        ],
        InternalEntityType.COMPANY: [
            ("title", "name"),
            ("description", "description"),
            ("website", "website"),
        ],
        InternalEntityType.LOCATION: _GENERIC_DEFAULTS[InternalEntityType.LOCATION],
    },
}

DEFAULT_IDENTITY_FIELDS: dict[InternalEntityType, str] = {
    InternalEntityType.USER: "email",
    InternalEntityType.COMPANY: "title",
    InternalEntityType.LOCATION: "title",
}


def default_field_mappings(
    provider: ProviderType,
    entity_type: InternalEntityType,
    entity_mapping_id: str = "",
) -> list[FieldMapping]:
    """Return starter field mappings for a provider and internal entity type."""
    pairs = DEFAULT_FIELD_MAPPINGS.get(provider, _GENERIC_DEFAULTS).get(
        entity_type, _GENERIC_DEFAULTS[entity_type]
    )
    return [
        FieldMapping(
            entity_mapping_id=entity_mapping_id,
            internal_field=internal,
            external_field=external,
            direction=SyncDirection.BIDIRECTIONAL,
            display_order=index,
        )
        for index, (internal, external) in enumerate(pairs)
    ]


def identity_fields(mapping: EntityMapping) -> tuple[str, str] | None:
    """Return (internal path, external field) used to match records by identity.

    The internal path is the mapping's identity_field (or the entity type's
    default); the external field is whichever enabled field mapping targets
    that path. Returns None if no field mapping covers the identity path.
    """
    internal_path = mapping.identity_field or DEFAULT_IDENTITY_FIELDS[mapping.internal_entity_type]
    for fm in mapping.field_mappings:
        if fm.is_enabled and fm.internal_field == internal_path:
            return internal_path, fm.external_field
    return None


def normalize_identity(value: Any) -> str | None:
    """Normalize an identity value for comparison; empty values yield None."""
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


# ── Validation ──────────────────────────────────────────────────────────────


def validate_entity_mapping(mapping: EntityMapping, connection_direction: SyncDirection | None = None) -> None:
    """Check one entity mapping's configuration before it is used.

    Rules:
    - every field/relationship path is a known accessor of the internal type
    - field and relationship directions are a subset of the mapping's direction
    - the mapping's direction overlaps the connection's direction
    - no two enabled field mappings write the same external field or internal path
      in the same direction

    Raises:
        ConfigurationError: On the first violated rule.
    """
    entity_type = mapping.internal_entity_type

    if connection_direction is not None and mapping.sync_direction.intersect(connection_direction) is None:
        raise ConfigurationError(
            f"Entity mapping '{mapping.external_entity}' direction {mapping.sync_direction.value} "
            f"does not overlap connection direction {connection_direction.value}"
        )

    for fm in mapping.field_mappings:
        get_accessor(entity_type, fm.internal_field)
        if not mapping.sync_direction.covers(fm.direction):
            raise ConfigurationError(
                f"Field mapping {fm.internal_field} -> {fm.external_field} direction "
                f"{fm.direction.value} exceeds entity mapping direction {mapping.sync_direction.value}"
            )

    for rm in mapping.relationship_mappings:
        get_accessor(entity_type, rm.internal_field)
        if not mapping.sync_direction.covers(rm.direction):
            raise ConfigurationError(
                f"Relationship mapping {rm.internal_field} direction {rm.direction.value} "
                f"exceeds entity mapping direction {mapping.sync_direction.value}"
            )

    for direction in (SyncDirection.OUTBOUND, SyncDirection.INBOUND):
        active = mapping.active_field_mappings(direction)
        targets = [
            fm.external_field if direction == SyncDirection.OUTBOUND else fm.internal_field
            for fm in active
        ]
        targets += [
            rm.external_lookup_field if direction == SyncDirection.OUTBOUND else rm.internal_field
            for rm in mapping.active_relationship_mappings(direction)
        ]
        duplicates = {t for t in targets if targets.count(t) > 1}
        if duplicates:
            raise ConfigurationError(
                f"Entity mapping '{mapping.external_entity}' writes {sorted(duplicates)} "
                f"more than once {direction.value}"
            )


# ── Snapshots & Deltas ──────────────────────────────────────────────────────


def outbound_paths(mapping: EntityMapping) -> list[str]:
    """Internal paths read by outbound field and relationship mappings."""
    paths = [fm.internal_field for fm in mapping.active_field_mappings(SyncDirection.OUTBOUND)]
    paths += [rm.internal_field for rm in mapping.active_relationship_mappings(SyncDirection.OUTBOUND)]
    return list(dict.fromkeys(paths))


def snapshot_values(
    entity: InternalEntity,
    entity_type: InternalEntityType,
    paths: list[str],
) -> dict[str, Any]:
    """JSON-compatible snapshot of the entity's values at ``paths``."""
    return {
        path: to_jsonable_python(get_accessor(entity_type, path).getter(entity))
        for path in paths
    }


def snapshot_outbound(entity: InternalEntity, mapping: EntityMapping) -> dict[str, Any]:
    return snapshot_values(entity, mapping.internal_entity_type, outbound_paths(mapping))


def changed_paths(current: dict[str, Any], previous: dict[str, Any] | None) -> list[str]:
    """Paths whose value differs from the previous snapshot (all paths if none)."""
    if previous is None:
        return list(current)
    missing = object()
    return [path for path, value in current.items() if previous.get(path, missing) != value]


def fingerprint(snapshot: dict[str, Any]) -> str:
    """Stable SHA-256 of a snapshot, stored as the ledger's last_sync_hash."""
    encoded = json.dumps(snapshot, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


# ── Outbound ────────────────────────────────────────────────────────────────


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def build_outbound_payload(
    entity: InternalEntity,
    mapping: EntityMapping,
    paths: list[str] | None = None,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    """Map an internal entity to external field values.

    Args:
        entity: Internal entity to read.
        mapping: Entity mapping whose outbound field mappings apply.
        paths: Optional subset of internal paths to include (the changed-field
            delta). None includes every outbound field.
        warnings: Collects transformation warnings.

    Returns:
        Dict of external field name to transformed value. Relationship fields
        are not included; the orchestrator resolves them through the ledger.

    Raises:
        RecordValidationError: If a required field mapping has an empty value.
    """
    entity_type = mapping.internal_entity_type
    payload: dict[str, Any] = {}

    for fm in mapping.active_field_mappings(SyncDirection.OUTBOUND):
        value = get_accessor(entity_type, fm.internal_field).getter(entity)
        if fm.is_required and _is_empty(value):
            raise RecordValidationError(
                f"Required field '{fm.internal_field}' is empty on {entity_type.value} {entity.id}"
            )
        if paths is not None and fm.internal_field not in paths:
            continue
        payload[fm.external_field] = apply(value, fm.transformation, SyncDirection.OUTBOUND, warnings)

    return payload


# ── Inbound ─────────────────────────────────────────────────────────────────


def read_inbound_values(
    record: ExternalRecord,
    mapping: EntityMapping,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    """Map an external record to internal path values.

    Only fields present on the record are mapped, so a sparse webhook
    payload never clears values it did not carry.

    Raises:
        RecordValidationError: If a required field mapping is absent or empty.
    """
    values: dict[str, Any] = {}
    for fm in mapping.active_field_mappings(SyncDirection.INBOUND):
        present = fm.external_field in record.fields
        raw = record.fields.get(fm.external_field)
        if fm.is_required and _is_empty(raw):
            raise RecordValidationError(
                f"Required field '{fm.external_field}' is empty on {record.entity_name} {record.id}"
            )
        if not present:
            continue
        values[fm.internal_field] = apply(raw, fm.transformation, SyncDirection.INBOUND, warnings)
    return values


def apply_inbound_values(
    entity: InternalEntity,
    entity_type: InternalEntityType,
    values: dict[str, Any],
) -> list[str]:
    """Write ``values`` into ``entity`` and return the paths that actually changed."""
    changed: list[str] = []
    for path, value in values.items():
        accessor = get_accessor(entity_type, path)
        if accessor.read_only:
            continue
        before = to_jsonable_python(accessor.getter(entity))
        accessor.setter(entity, value)
        if to_jsonable_python(accessor.getter(entity)) != before:
            changed.append(path)
    return changed
