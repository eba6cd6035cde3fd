"""Internal entity models and their field accessor registry.

Each internal entity type has an explicit table of typed getter/setter
closures keyed by field path. Field mappings address internal values only
through this registry, so an unknown path is a configuration error caught
when mappings are loaded instead of a silent no-op during a sync.

Paths of the form ``custom_fields.<key>`` reach into the entity's dynamic
custom-fields bag through a dedicated accessor.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from src.crmsync.crm.errors import ConfigurationError, RecordValidationError
from src.crmsync.crm.schemas import InternalEntityType

CUSTOM_FIELDS_PREFIX = "custom_fields."


# ── Internal Entity Models ──────────────────────────────────────────────────


class InternalEntity(BaseModel):
    """Common shape of every syncable internal entity."""

    id: str = ""
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class UserEntity(InternalEntity):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    user_name: str | None = None
    phone_number: str | None = None
    title: str | None = None
    photo_uri: str | None = None
    company_id: str | None = None
    location_id: str | None = None


class CompanyEntity(InternalEntity):
    title: str | None = None
    description: str | None = None
    website: str | None = None
    phone_number: str | None = None
    logo_uri: str | None = None


class LocationEntity(InternalEntity):
    title: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None
    phone_number: str | None = None
    company_id: str | None = None


ENTITY_MODELS: dict[InternalEntityType, type[InternalEntity]] = {
    InternalEntityType.USER: UserEntity,
    InternalEntityType.COMPANY: CompanyEntity,
    InternalEntityType.LOCATION: LocationEntity,
}


def new_entity(entity_type: InternalEntityType) -> InternalEntity:
    """Create an empty, unsaved entity of the given type."""
    return ENTITY_MODELS[entity_type]()


# ── Accessors ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FieldAccessor:
    """Typed getter/setter pair for one internal field path."""

    path: str
    getter: Callable[[InternalEntity], Any]
    setter: Callable[[InternalEntity, Any], None]
    read_only: bool = False


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _to_ref(value: Any) -> str | None:
    """Entity references are stored as strings; empty strings mean no reference."""
    if value is None or value == "":
        return None
    return str(value)


def _attribute(name: str, coerce: Callable[[Any], Any] = _to_text) -> FieldAccessor:
    def getter(entity: InternalEntity) -> Any:
        return getattr(entity, name)

    def setter(entity: InternalEntity, value: Any) -> None:
        setattr(entity, name, coerce(value))

    return FieldAccessor(path=name, getter=getter, setter=setter)


def _id_accessor() -> FieldAccessor:
    def getter(entity: InternalEntity) -> Any:
        return entity.id

    def setter(entity: InternalEntity, value: Any) -> None:
        raise RecordValidationError("internal entity id is read-only")

    return FieldAccessor(path="id", getter=getter, setter=setter, read_only=True)


def custom_field_accessor(key: str) -> FieldAccessor:
    """Accessor for one key of the dynamic custom-fields bag."""
    if not key:
        raise ConfigurationError("custom field path needs a key, e.g. 'custom_fields.region'")

    def getter(entity: InternalEntity) -> Any:
        return entity.custom_fields.get(key)

    def setter(entity: InternalEntity, value: Any) -> None:
        if value is None:
            entity.custom_fields.pop(key, None)
        else:
            entity.custom_fields[key] = value

    return FieldAccessor(path=f"{CUSTOM_FIELDS_PREFIX}{key}", getter=getter, setter=setter)


def _registry(*accessors: FieldAccessor) -> dict[str, FieldAccessor]:
    return {a.path: a for a in accessors}


ACCESSOR_REGISTRY: dict[InternalEntityType, dict[str, FieldAccessor]] = {
    InternalEntityType.USER: _registry(
        _id_accessor(),
        _attribute("first_name"),
        _attribute("last_name"),
        _attribute("email"),
        _attribute("user_name"),
        _attribute("phone_number"),
        _attribute("title"),
        _attribute("photo_uri"),
        _attribute("company_id", _to_ref),
        _attribute("location_id", _to_ref),
    ),
    InternalEntityType.COMPANY: _registry(
        _id_accessor(),
        _attribute("title"),
        _attribute("description"),
        _attribute("website"),
        _attribute("phone_number"),
        _attribute("logo_uri"),
    ),
    InternalEntityType.LOCATION: _registry(
        _id_accessor(),
        _attribute("title"),
        _attribute("address"),
        _attribute("city"),
        _attribute("state"),
        _attribute("zip_code"),
        _attribute("country"),
        _attribute("phone_number"),
        _attribute("company_id", _to_ref),
    ),
}


def get_accessor(entity_type: InternalEntityType, path: str) -> FieldAccessor:
    """Resolve the accessor for ``path`` on ``entity_type``.

    Raises:
        ConfigurationError: If the path is not a known field of the type.
    """
    if path.startswith(CUSTOM_FIELDS_PREFIX):
        return custom_field_accessor(path[len(CUSTOM_FIELDS_PREFIX):])
    try:
        return ACCESSOR_REGISTRY[entity_type][path]
    except KeyError:
        raise ConfigurationError(
            f"Unknown field '{path}' for internal entity type '{entity_type.value}'"
        ) from None


def get_value(entity: InternalEntity, entity_type: InternalEntityType, path: str) -> Any:
    return get_accessor(entity_type, path).getter(entity)


def set_value(entity: InternalEntity, entity_type: InternalEntityType, path: str, value: Any) -> None:
    get_accessor(entity_type, path).setter(entity, value)


def available_fields(entity_type: InternalEntityType) -> list[str]:
    """Field paths that can be mapped for ``entity_type`` (custom fields excluded)."""
    return list(ACCESSOR_REGISTRY[entity_type])
