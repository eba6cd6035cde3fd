"""Transformation engine -- best-effort bidirectional value converters.

apply() is pure and synchronous. Every converter either returns the
converted value or raises TransformationError internally; apply() contains
that error, appends a warning and returns the original value, so a bad
value never aborts the owning field's sync.

Transformation configuration arrives already typed (see the variants in
schemas.py). Legacy persisted pairs of (type name, JSON blob) are turned
into typed variants once, at configuration load, by parse_transformation().
"""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

from dateutil import parser as date_parser
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from src.crmsync.crm.errors import ConfigurationError, TransformationError
from src.crmsync.crm.schemas import (
    BooleanTransform,
    ConcatTransform,
    DateFormatTransform,
    DefaultTransform,
    LookupTransform,
    LowercaseTransform,
    SplitTransform,
    SyncDirection,
    Transformation,
    TrimTransform,
    UppercaseTransform,
)

_TRUE_LITERALS = frozenset({"true", "1", "yes"})

_transformation_adapter: TypeAdapter[Transformation] = TypeAdapter(Transformation)


# ── Config Parsing ──────────────────────────────────────────────────────────

# Legacy configuration keys -> typed field names
_LEGACY_KEYS: dict[str, dict[str, str]] = {
    "date_format": {"Format": "external_format", "CrmFormat": "external_format"},
    "lookup": {"Mappings": "table"},
    "concat": {"Prefix": "prefix", "Suffix": "suffix"},
    "split": {"Delimiter": "delimiter", "Index": "index"},
    "default": {"Value": "value", "DefaultValue": "value"},
    "boolean": {"CrmTrueValue": "true_value", "CrmFalseValue": "false_value"},
}


def parse_transformation(kind: str | None, config: str | dict[str, Any] | None) -> Transformation | None:
    """Build a typed transformation from a stored type name and config blob.

    Accepts either the typed field names or the legacy PascalCase keys. A
    ``kind`` of None, "" or "none" means no transformation.

    Args:
        kind: Transformation type name (e.g. "uppercase", "Lookup").
        config: JSON string or dict with the kind-specific settings.

    Returns:
        A Transformation variant, or None.

    Raises:
        ConfigurationError: If the kind is unknown or the config is malformed.
    """
    if not kind or kind.lower() == "none":
        return None

    normalized_kind = _normalize_kind(kind)

    if isinstance(config, str):
        try:
            config = json.loads(config) if config.strip() else {}
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                f"Transformation config for '{kind}' is not valid JSON: {exc}"
            ) from exc
    payload: dict[str, Any] = dict(config or {})

    legacy = _LEGACY_KEYS.get(normalized_kind, {})
    for old_key, new_key in legacy.items():
        if old_key in payload and new_key not in payload:
            payload[new_key] = payload.pop(old_key)
    payload["kind"] = normalized_kind

    try:
        return _transformation_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            f"Invalid transformation config for '{kind}': {exc.errors()[0]['msg']}"
        ) from exc


def dump_transformation(transformation: Transformation | None) -> tuple[str | None, dict[str, Any] | None]:
    """Split a typed transformation into (kind, config) for persistence."""
    if transformation is None:
        return None, None
    data = transformation.model_dump(mode="json")
    kind = data.pop("kind")
    return kind, data


def _normalize_kind(kind: str) -> str:
    """Map "DateFormat", "date-format" and "date_format" to "date_format"."""
    compact = kind.replace("-", "").replace("_", "").lower()
    aliases = {"dateformat": "date_format"}
    return aliases.get(compact, compact)


# ── Apply ───────────────────────────────────────────────────────────────────


def apply(
    value: Any,
    transformation: Transformation | None,
    direction: SyncDirection,
    warnings: list[str] | None = None,
) -> Any:
    """Apply a transformation to one field value.

    Args:
        value: The value to convert (internal value outbound, external value inbound).
        transformation: Typed transformation variant, or None for pass-through.
        direction: SyncDirection.OUTBOUND or SyncDirection.INBOUND.
        warnings: Optional list that collects a message per contained failure.

    Returns:
        The converted value, or ``value`` unchanged on failure.
    """
    if transformation is None:
        return value

    outbound = direction == SyncDirection.OUTBOUND
    try:
        return _convert(value, transformation, outbound)
    except TransformationError as exc:
        if warnings is not None:
            warnings.append(f"{transformation.kind}: {exc}")
        return value


def _convert(value: Any, transformation: Transformation, outbound: bool) -> Any:
    if isinstance(transformation, UppercaseTransform):
        return None if value is None else str(value).upper()

    if isinstance(transformation, LowercaseTransform):
        return None if value is None else str(value).lower()

    if isinstance(transformation, TrimTransform):
        return None if value is None else str(value).strip()

    if isinstance(transformation, DefaultTransform):
        return transformation.value if value is None else value

    if isinstance(transformation, DateFormatTransform):
        return _format_date(value, transformation) if outbound else _parse_date(value)

    if isinstance(transformation, LookupTransform):
        return _lookup(value, transformation, outbound)

    if isinstance(transformation, ConcatTransform):
        if not outbound or value is None:
            return value
        return f"{transformation.prefix}{value}{transformation.suffix}"

    if isinstance(transformation, SplitTransform):
        if not outbound or value is None:
            return value
        parts = str(value).split(transformation.delimiter)
        if 0 <= transformation.index < len(parts):
            return parts[transformation.index]
        return value

    if isinstance(transformation, BooleanTransform):
        return _to_external_bool(value, transformation) if outbound else _from_external_bool(value, transformation)

    raise TransformationError(f"unsupported transformation {transformation!r}")


# ── Converters ──────────────────────────────────────────────────────────────


def _format_date(value: Any, config: DateFormatTransform) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        value = _parse_date(value)
    if not isinstance(value, (date, datetime)):
        raise TransformationError(f"cannot format {type(value).__name__} as a date")
    try:
        return value.strftime(config.external_format)
    except ValueError as exc:
        raise TransformationError(f"bad date format '{config.external_format}': {exc}") from exc


def _parse_date(value: Any) -> Any:
    if value is None or isinstance(value, (date, datetime)):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date_parser.parse(text)
    except (ValueError, OverflowError) as exc:
        raise TransformationError(f"cannot parse '{text}' as a date") from exc


def _lookup(value: Any, config: LookupTransform, outbound: bool) -> Any:
    if value is None:
        return None
    key = str(value)
    if outbound:
        return config.table.get(key, value)
    # Reverse lookup: the first-inserted key wins when several map to the same value
    for internal_value, external_value in config.table.items():
        if external_value == key:
            return internal_value
    return value


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_LITERALS:
            return True
        if text in ("false", "0", "no", ""):
            return False
    raise TransformationError(f"cannot interpret '{value}' as a boolean")


def _to_external_bool(value: Any, config: BooleanTransform) -> Any:
    if value is None:
        return None
    flag = _coerce_bool(value)
    if config.true_value is not None and config.false_value is not None:
        return config.true_value if flag else config.false_value
    return flag


def _from_external_bool(value: Any, config: BooleanTransform) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if config.true_value is not None and text == config.true_value.strip().lower():
        return True
    return text in _TRUE_LITERALS
