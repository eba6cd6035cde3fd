"""Dynamics 365 provider -- Dataverse Web API v9.2 over OAuth2 client credentials.

Key implementation details:
- Tokens come from login.microsoftonline.com with scope ``{environment}/.default``
  and are cached per connection until shortly before expiry
- Entity set names are derived from logical names (contact -> contacts,
  territory -> territories, address -> addresses) with known exceptions
- Incremental reads filter on ``modifiedon gt <since>`` and follow
  ``@odata.nextLink`` until the result set is exhausted
- Creates read the new ID from the response body or the ``OData-EntityId`` header
- Plugin-registered webhooks post a RemoteExecutionContext; the shared key
  arrives in the ``x-crm-webhook-key`` header
"""

from __future__ import annotations

import json
import re
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from dateutil import parser as date_parser

from src.crmsync.crm.errors import AuthenticationError, ConfigurationError, ProviderError, ProviderUnavailableError
from src.crmsync.crm.providers.base import HttpCRMProvider, signatures_match
from src.crmsync.crm.schemas import (
    Connection,
    EntitySchema,
    ExternalRecord,
    FieldSchema,
    OptionSetValue,
    ProviderType,
    UpsertResult,
    WebhookEvent,
)

logger = structlog.get_logger(__name__)

API_VERSION = "v9.2"
AZURE_AD_AUTHORITY = "https://login.microsoftonline.com"
WEBHOOK_KEY_HEADER = "x-crm-webhook-key"
ODATA_BIND_SUFFIX = "@odata.bind"
MATCH_LIMIT = 10

# Seconds before expiry at which a cached token is refreshed
_TOKEN_REFRESH_MARGIN = 60

_KNOWN_ENTITY_SETS = {
    "contact": "contacts",
    "account": "accounts",
    "lead": "leads",
    "opportunity": "opportunities",
    "systemuser": "systemusers",
    "team": "teams",
}

# Auto-generated primary keys that Dynamics rejects in write payloads
_READ_ONLY_PRIMARY_KEYS = frozenset({
    "accountid", "contactid", "leadid", "opportunityid", "incidentid",
    "systemuserid", "teamid", "businessunitid", "organizationid",
})

_ATTRIBUTE_TYPES = {
    "String": "string",
    "Memo": "string",
    "Integer": "integer",
    "BigInt": "integer",
    "Double": "decimal",
    "Decimal": "decimal",
    "Money": "decimal",
    "Boolean": "boolean",
    "DateTime": "datetime",
    "Lookup": "lookup",
    "Customer": "lookup",
    "Owner": "lookup",
    "Picklist": "option_set",
    "State": "option_set",
    "Status": "option_set",
    "Uniqueidentifier": "guid",
}

_ENTITY_ID_PATTERN = re.compile(r"\(([0-9a-fA-F-]+)\)")


def entity_set_name(entity_name: str) -> str:
    """Web API collection name for a logical entity name."""
    name = entity_name.lower()
    if name in _KNOWN_ENTITY_SETS:
        return _KNOWN_ENTITY_SETS[name]
    if name.endswith("y") and len(name) > 1 and name[-2] not in "aeiou":
        return name[:-1] + "ies"
    if name.endswith("s"):
        return name + "es"
    return name + "s"


def _label(token: Any) -> str | None:
    """Extract the user-localized text from a Dynamics label object."""
    if not isinstance(token, dict):
        return None
    localized = token.get("UserLocalizedLabel")
    if isinstance(localized, dict) and localized.get("Label"):
        return localized["Label"]
    for label in token.get("LocalizedLabels") or []:
        if label.get("Label"):
            return label["Label"]
    return None


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class DynamicsProvider(HttpCRMProvider):
    """Microsoft Dynamics 365 / Dataverse provider.

    Credentials read from the connection: ``client_id``, ``client_secret`` and
    ``tenant_id``, each falling back to the app-level registration passed in.

    Args:
        client_id: Fallback Azure AD application ID.
        client_secret: Fallback Azure AD application secret.
        tenant_id: Fallback Azure AD directory ID.
    """

    provider_type = ProviderType.DYNAMICS365

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        tenant_id: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._client_id = client_id
        self._client_secret = client_secret
        self._tenant_id = tenant_id
        self._tokens: dict[str, tuple[str, float]] = {}

    # ── URLs ────────────────────────────────────────────────────────────────

    @staticmethod
    def _environment_url(connection: Connection) -> str:
        if not connection.environment_url:
            raise ConfigurationError(
                f"Dynamics connection {connection.id} has no environment_url"
            )
        return connection.environment_url.rstrip("/")

    def _api_base(self, connection: Connection) -> str:
        return f"{self._environment_url(connection)}/api/data/{API_VERSION}"

    def _resource_url(self, connection: Connection) -> str:
        return self._environment_url(connection).replace(".api.", ".")

    # ── Authentication ──────────────────────────────────────────────────────

    async def _acquire_token(self, connection: Connection) -> str:
        """Client-credentials token for the connection's environment.

        Raises:
            AuthenticationError: If credentials are missing or rejected.
            ProviderUnavailableError: If Azure AD cannot be reached.
        """
        creds = connection.credentials
        client_id = creds.get("client_id") or self._client_id
        client_secret = creds.get("client_secret") or self._client_secret
        tenant_id = creds.get("tenant_id") or self._tenant_id
        if not (client_id and client_secret and tenant_id):
            raise AuthenticationError(
                "client_id, client_secret and tenant_id are required for Dynamics 365"
            )

        scope = f"{self._resource_url(connection)}/.default"
        try:
            response = await self._http.post(
                f"{AZURE_AD_AUTHORITY}/{tenant_id}/oauth2/v2.0/token",
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "grant_type": "client_credentials",
                    "scope": scope,
                },
            )
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Azure AD unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error or not body.get("access_token"):
            error = body.get("error_description") or body.get("error") or response.text[:500]
            raise AuthenticationError(f"Dynamics token request failed: {error} (scope: {scope})")

        expires_in = int(body.get("expires_in") or 3600)
        self._tokens[connection.id] = (body["access_token"], time.monotonic() + expires_in)
        logger.debug("dynamics.token_acquired", connection_id=connection.id, expires_in=expires_in)
        return body["access_token"]

    async def _auth_headers(self, connection: Connection) -> dict[str, str]:
        cached = self._tokens.get(connection.id)
        if cached and cached[1] - _TOKEN_REFRESH_MARGIN > time.monotonic():
            token = cached[0]
        else:
            token = await self._acquire_token(connection)
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
        }

    async def _probe(self, connection: Connection) -> None:
        await self._request(connection, "validate", "GET", f"{self._api_base(connection)}/WhoAmI")

    # ── Schema Discovery ────────────────────────────────────────────────────

    async def list_entities(self, connection: Connection) -> list[EntitySchema]:
        response = await self._request(
            connection,
            "list_entities",
            "GET",
            f"{self._api_base(connection)}/EntityDefinitions",
            params={
                "$select": (
                    "LogicalName,DisplayName,DisplayCollectionName,IsCustomEntity,"
                    "PrimaryIdAttribute,PrimaryNameAttribute,EntitySetName"
                ),
                "$filter": "IsValidForAdvancedFind eq true",
            },
        )
        entities = []
        for item in response.json().get("value", []):
            logical_name = item.get("LogicalName") or ""
            if not logical_name:
                continue
            entities.append(EntitySchema(
                name=logical_name,
                display_name=_label(item.get("DisplayName")) or logical_name,
                plural_name=_label(item.get("DisplayCollectionName")) or item.get("EntitySetName") or "",
                primary_key_field=item.get("PrimaryIdAttribute") or f"{logical_name}id",
                primary_name_field=item.get("PrimaryNameAttribute"),
                is_custom=bool(item.get("IsCustomEntity")),
            ))
        return sorted(entities, key=lambda e: e.display_name.lower())

    async def list_fields(self, connection: Connection, entity_name: str) -> list[FieldSchema]:
        base = f"{self._api_base(connection)}/EntityDefinitions(LogicalName='{entity_name}')/Attributes"
        response = await self._request(
            connection,
            "list_fields",
            "GET",
            base,
            params={
                "$select": "LogicalName,DisplayName,AttributeType,RequiredLevel,IsCustomAttribute",
            },
        )
        lookups = await self._request(
            connection,
            "list_fields",
            "GET",
            f"{base}/Microsoft.Dynamics.CRM.LookupAttributeMetadata",
            params={"$select": "LogicalName,Targets"},
        )
        targets = {
            item["LogicalName"]: item["Targets"][0]
            for item in lookups.json().get("value", [])
            if item.get("LogicalName") and item.get("Targets")
        }
        options = await self._option_sets(connection, base)

        fields = []
        for item in response.json().get("value", []):
            logical_name = item.get("LogicalName") or ""
            if not logical_name or logical_name.startswith("yomi") or logical_name.endswith("_base"):
                continue
            attribute_type = item.get("AttributeType") or "String"
            required = (item.get("RequiredLevel") or {}).get("Value")
            fields.append(FieldSchema(
                name=logical_name,
                display_name=_label(item.get("DisplayName")) or logical_name,
                field_type=_ATTRIBUTE_TYPES.get(attribute_type, "string"),
                is_required=required in ("ApplicationRequired", "SystemRequired"),
                is_read_only=attribute_type in ("Uniqueidentifier", "EntityName"),
                is_custom=bool(item.get("IsCustomAttribute")),
                max_length=item.get("MaxLength"),
                lookup_entity=targets.get(logical_name),
                options=options.get(logical_name, []),
            ))
        return sorted(fields, key=lambda f: f.display_name.lower())

    async def _option_sets(self, connection: Connection, attributes_url: str) -> dict[str, list[OptionSetValue]]:
        response = await self._request(
            connection,
            "list_fields",
            "GET",
            f"{attributes_url}/Microsoft.Dynamics.CRM.PicklistAttributeMetadata",
            params={"$select": "LogicalName", "$expand": "OptionSet($select=Options)"},
        )
        result: dict[str, list[OptionSetValue]] = {}
        for item in response.json().get("value", []):
            opts = (item.get("OptionSet") or {}).get("Options") or []
            result[item.get("LogicalName", "")] = [
                OptionSetValue(value=o["Value"], label=_label(o.get("Label")) or str(o["Value"]))
                for o in opts
                if "Value" in o
            ]
        return result

    # ── Records ─────────────────────────────────────────────────────────────

    @staticmethod
    def _to_record(entity_name: str, data: dict[str, Any]) -> ExternalRecord:
        """Convert a Web API entity to an ExternalRecord.

        OData annotations are dropped; lookup values (``_x_value``) are kept.
        """
        fields = {
            key: value
            for key, value in data.items()
            if not key.startswith("@")
            and "@" not in key
            and (not key.startswith("_") or key.endswith("_value"))
        }
        record_id = data.get(f"{entity_name}id") or data.get("id") or ""
        return ExternalRecord(
            entity_name=entity_name,
            id=str(record_id),
            fields=fields,
            created_on=_parse_datetime(data.get("createdon")),
            modified_on=_parse_datetime(data.get("modifiedon")),
        )

    async def read_changed(
        self,
        connection: Connection,
        entity_name: str,
        since: datetime | None = None,
        filter_expression: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> AsyncIterator[ExternalRecord]:
        filters = []
        if since is not None:
            filters.append(f"modifiedon gt {_format_datetime(since)}")
        if filter_expression:
            filters.append(f"({filter_expression})")
        params: dict[str, str] | None = {"$orderby": "modifiedon asc"}
        if filters:
            params["$filter"] = " and ".join(filters)

        url: str | None = f"{self._api_base(connection)}/{entity_set_name(entity_name)}"
        page = 0
        while url:
            response = await self._request(
                connection,
                "read_changed",
                "GET",
                url,
                params=params,
                headers={"Prefer": "odata.maxpagesize=500"},
            )
            body = response.json()
            page += 1
            for item in body.get("value", []):
                yield self._to_record(entity_name, item)
            # nextLink already carries the query
            url = body.get("@odata.nextLink")
            params = None
        logger.debug("dynamics.read_complete", entity=entity_name, pages=page)

    async def get_record(
        self, connection: Connection, entity_name: str, record_id: str
    ) -> ExternalRecord | None:
        try:
            response = await self._request(
                connection,
                "get_record",
                "GET",
                f"{self._api_base(connection)}/{entity_set_name(entity_name)}({record_id})",
            )
        except ProviderError as exc:
            if exc.status_code == 404:
                return None
            raise
        return self._to_record(entity_name, response.json())

    async def find_by_field(
        self, connection: Connection, entity_name: str, field_name: str, value: str
    ) -> list[ExternalRecord]:
        literal = value.replace("'", "''")
        response = await self._request(
            connection,
            "find",
            "GET",
            f"{self._api_base(connection)}/{entity_set_name(entity_name)}",
            params={"$filter": f"{field_name} eq '{literal}'", "$top": str(MATCH_LIMIT)},
        )
        return [self._to_record(entity_name, item) for item in response.json().get("value", [])]

    async def upsert(
        self,
        connection: Connection,
        entity_name: str,
        external_id: str | None,
        fields: dict[str, Any],
    ) -> UpsertResult:
        payload = {}
        for key, value in fields.items():
            if key.lower() in _READ_ONLY_PRIMARY_KEYS:
                logger.warning("dynamics.read_only_field_stripped", entity=entity_name, field=key)
                continue
            payload[key] = value

        collection = f"{self._api_base(connection)}/{entity_set_name(entity_name)}"
        if external_id:
            await self._request(
                connection,
                "update",
                "PATCH",
                f"{collection}({external_id})",
                json=payload,
                headers={"If-Match": "*"},
            )
            return UpsertResult(external_id=external_id, created=False)

        response = await self._request(
            connection,
            "create",
            "POST",
            collection,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        new_id = ""
        if response.content:
            try:
                new_id = str(response.json().get(f"{entity_name}id") or "")
            except ValueError:
                new_id = ""
        if not new_id:
            match = _ENTITY_ID_PATTERN.search(response.headers.get("OData-EntityId", ""))
            if match:
                new_id = match.group(1)
        if not new_id:
            raise ProviderError(f"Dynamics create of {entity_name} returned no record ID")
        return UpsertResult(external_id=new_id, created=True)

    # ── Lookups ─────────────────────────────────────────────────────────────

    def format_lookup_value(self, lookup_field: str, related_entity: str, external_id: str) -> Any:
        """``x@odata.bind`` lookups take an entity reference, plain fields the raw ID."""
        if lookup_field.endswith(ODATA_BIND_SUFFIX):
            return f"/{entity_set_name(related_entity)}({external_id})"
        return external_id

    def lookup_field_candidates(self, lookup_field: str) -> list[str]:
        """Reads return lookups as ``_{attribute}_value``, not under the bind name.

        Polymorphic navigation properties (``parentcustomerid_account``) read
        back under the attribute name without the target suffix.
        """
        name = lookup_field.removesuffix(ODATA_BIND_SUFFIX)
        candidates = [name, f"_{name}_value"]
        if "_" in name:
            candidates.append(f"_{name.rsplit('_', 1)[0]}_value")
        return candidates

    # ── Webhooks ────────────────────────────────────────────────────────────

    def parse_webhook_payload(
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookEvent | None:
        """Parse a RemoteExecutionContext posted by a Dataverse service endpoint."""
        try:
            context = json.loads(raw_body)
        except ValueError:
            logger.warning("dynamics.webhook_invalid_json")
            return None
        if not isinstance(context, dict):
            return None

        message = context.get("MessageName")
        entity_name = context.get("PrimaryEntityName")
        record_id = context.get("PrimaryEntityId")
        if not (message and entity_name and record_id):
            return None

        record = None
        target = (context.get("InputParameters") or [])
        for parameter in target:
            if parameter.get("key") == "Target" and isinstance(parameter.get("value"), dict):
                attributes = parameter["value"].get("Attributes") or []
                record = ExternalRecord(
                    entity_name=entity_name,
                    id=str(record_id),
                    fields={a["key"]: a.get("value") for a in attributes if "key" in a},
                )
                break

        return WebhookEvent(
            event_type=str(message).lower(),
            entity_name=entity_name,
            record_id=str(record_id),
            record=record,
            event_time=_parse_datetime(context.get("OperationCreatedOn")) or datetime.now(timezone.utc),
            raw_payload=raw_body.decode("utf-8", errors="replace"),
        )

    def validate_webhook_signature(
        self, raw_body: bytes, headers: Mapping[str, str], secret: str
    ) -> bool:
        return signatures_match(secret, httpx.Headers(headers).get(WEBHOOK_KEY_HEADER))
