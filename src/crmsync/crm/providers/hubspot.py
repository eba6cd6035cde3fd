"""HubSpot provider -- CRM v3 objects API with a private-app bearer token.

Key implementation details:
- Full reads page through GET /crm/v3/objects/{object} with the ``after`` cursor
- Incremental or filtered reads use POST /crm/v3/objects/{object}/search with a
  last-modified GTE filter (epoch milliseconds) plus an optional JSON filter
  expression: a list of ``{"propertyName", "operator", "value"}`` dicts
- Only requested properties are returned by HubSpot, so reads pass the mapped
  external fields through ``properties``
- Webhook deliveries are JSON arrays of events; v1 signatures are
  ``sha256(client_secret + body)`` in ``X-HubSpot-Signature``
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import AsyncIterator, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from dateutil import parser as date_parser

from src.crmsync.crm.errors import AuthenticationError, ConfigurationError, ProviderError
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

SIGNATURE_HEADER = "X-HubSpot-Signature"
PAGE_SIZE = 100
MATCH_LIMIT = 10

STANDARD_OBJECTS: dict[str, tuple[str, str, str]] = {
    # object -> (singular label, plural label, primary display property)
    "contacts": ("Contact", "Contacts", "email"),
    "companies": ("Company", "Companies", "name"),
    "deals": ("Deal", "Deals", "dealname"),
    "tickets": ("Ticket", "Tickets", "subject"),
}

# Webhook subscription object prefix -> object name
_WEBHOOK_OBJECTS = {
    "contact": "contacts",
    "company": "companies",
    "deal": "deals",
    "ticket": "tickets",
}


def modified_property(object_name: str) -> str:
    """Last-modified property name; contacts predate the hs_ prefix."""
    return "lastmodifieddate" if object_name == "contacts" else "hs_lastmodifieddate"


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


def _epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class HubSpotProvider(HttpCRMProvider):
    """HubSpot CRM provider.

    Credentials read from the connection: ``access_token`` (private app token).

    Args:
        api_base: HubSpot API root URL.
        client_secret: App secret used for v1 webhook signatures when the
            connection has no webhook_secret of its own.
    """

    provider_type = ProviderType.HUBSPOT

    def __init__(
        self,
        api_base: str = "https://api.hubapi.com",
        client_secret: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._api_base = api_base.rstrip("/")
        self._client_secret = client_secret

    def webhook_secret_for(self, connection: Connection) -> str | None:
        return connection.webhook_secret or self._client_secret or None

    async def _auth_headers(self, connection: Connection) -> dict[str, str]:
        token = connection.credentials.get("access_token")
        if not token:
            raise AuthenticationError("HubSpot connection has no access_token")
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def _probe(self, connection: Connection) -> None:
        await self._request(
            connection,
            "validate",
            "GET",
            f"{self._api_base}/crm/v3/objects/contacts",
            params={"limit": 1},
        )

    # ── Schema Discovery ────────────────────────────────────────────────────

    async def list_entities(self, connection: Connection) -> list[EntitySchema]:
        entities = [
            EntitySchema(
                name=name,
                display_name=singular,
                plural_name=plural,
                primary_key_field="hs_object_id",
                primary_name_field=display,
            )
            for name, (singular, plural, display) in STANDARD_OBJECTS.items()
        ]
        response = await self._request(connection, "list_entities", "GET", f"{self._api_base}/crm/v3/schemas")
        for item in response.json().get("results", []):
            labels = item.get("labels") or {}
            entities.append(EntitySchema(
                name=item.get("fullyQualifiedName") or item.get("name") or "",
                display_name=labels.get("singular") or item.get("name") or "",
                plural_name=labels.get("plural") or "",
                primary_key_field="hs_object_id",
                primary_name_field=item.get("primaryDisplayProperty"),
                is_custom=True,
            ))
        return entities

    async def list_fields(self, connection: Connection, entity_name: str) -> list[FieldSchema]:
        response = await self._request(
            connection, "list_fields", "GET", f"{self._api_base}/crm/v3/properties/{entity_name}"
        )
        fields = []
        for item in response.json().get("results", []):
            if item.get("hidden"):
                continue
            metadata = item.get("modificationMetadata") or {}
            fields.append(FieldSchema(
                name=item["name"],
                display_name=item.get("label") or item["name"],
                field_type=item.get("type") or "string",
                is_read_only=bool(metadata.get("readOnlyValue")),
                is_custom=not item.get("hubspotDefined", False),
                options=[
                    OptionSetValue(value=index, label=option.get("label") or option.get("value", ""))
                    for index, option in enumerate(item.get("options") or [])
                ],
            ))
        return sorted(fields, key=lambda f: f.display_name.lower())

    # ── Records ─────────────────────────────────────────────────────────────

    @staticmethod
    def _to_record(entity_name: str, data: dict[str, Any]) -> ExternalRecord:
        return ExternalRecord(
            entity_name=entity_name,
            id=str(data.get("id", "")),
            fields=dict(data.get("properties") or {}),
            created_on=_parse_datetime(data.get("createdAt")),
            modified_on=_parse_datetime(data.get("updatedAt")),
        )

    @staticmethod
    def _parse_filter_expression(filter_expression: str) -> list[dict[str, Any]]:
        """Decode the JSON filter list stored on an entity mapping.

        Raises:
            ConfigurationError: If the expression is not a JSON list of filter objects.
        """
        try:
            filters = json.loads(filter_expression)
        except ValueError as exc:
            raise ConfigurationError(f"HubSpot filter expression is not valid JSON: {exc}") from exc
        if isinstance(filters, dict):
            filters = [filters]
        if not isinstance(filters, list) or not all(isinstance(f, dict) for f in filters):
            raise ConfigurationError("HubSpot filter expression must be a JSON list of filter objects")
        return filters

    async def read_changed(
        self,
        connection: Connection,
        entity_name: str,
        since: datetime | None = None,
        filter_expression: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> AsyncIterator[ExternalRecord]:
        properties = list(fields or [])
        if since is None and not filter_expression:
            async for record in self._list_all(connection, entity_name, properties):
                yield record
            return

        modified = modified_property(entity_name)
        filters: list[dict[str, Any]] = []
        if since is not None:
            filters.append({"propertyName": modified, "operator": "GTE", "value": str(_epoch_ms(since))})
        if filter_expression:
            filters.extend(self._parse_filter_expression(filter_expression))

        after: str | None = None
        while True:
            body: dict[str, Any] = {
                "filterGroups": [{"filters": filters}],
                "sorts": [{"propertyName": modified, "direction": "ASCENDING"}],
                "limit": PAGE_SIZE,
            }
            if properties:
                body["properties"] = properties
            if after:
                body["after"] = after
            response = await self._request(
                connection,
                "read_changed",
                "POST",
                f"{self._api_base}/crm/v3/objects/{entity_name}/search",
                json=body,
            )
            data = response.json()
            for item in data.get("results", []):
                yield self._to_record(entity_name, item)
            after = ((data.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                return

    async def _list_all(
        self, connection: Connection, entity_name: str, properties: list[str]
    ) -> AsyncIterator[ExternalRecord]:
        after: str | None = None
        while True:
            params: dict[str, Any] = {"limit": PAGE_SIZE}
            if properties:
                params["properties"] = ",".join(properties)
            if after:
                params["after"] = after
            response = await self._request(
                connection,
                "read_changed",
                "GET",
                f"{self._api_base}/crm/v3/objects/{entity_name}",
                params=params,
            )
            data = response.json()
            for item in data.get("results", []):
                yield self._to_record(entity_name, item)
            after = ((data.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                return

    async def get_record(
        self, connection: Connection, entity_name: str, record_id: str
    ) -> ExternalRecord | None:
        try:
            response = await self._request(
                connection,
                "get_record",
                "GET",
                f"{self._api_base}/crm/v3/objects/{entity_name}/{record_id}",
            )
        except ProviderError as exc:
            if exc.status_code == 404:
                return None
            raise
        return self._to_record(entity_name, response.json())

    async def find_by_field(
        self, connection: Connection, entity_name: str, field_name: str, value: str
    ) -> list[ExternalRecord]:
        # Search EQ on string properties ignores case
        body = {
            "filterGroups": [{"filters": [{"propertyName": field_name, "operator": "EQ", "value": value}]}],
            "properties": [field_name],
            "limit": MATCH_LIMIT,
        }
        response = await self._request(
            connection,
            "find",
            "POST",
            f"{self._api_base}/crm/v3/objects/{entity_name}/search",
            json=body,
        )
        return [self._to_record(entity_name, item) for item in response.json().get("results", [])]

    async def upsert(
        self,
        connection: Connection,
        entity_name: str,
        external_id: str | None,
        fields: dict[str, Any],
    ) -> UpsertResult:
        payload = {"properties": {k: ("" if v is None else v) for k, v in fields.items()}}
        if external_id:
            await self._request(
                connection,
                "update",
                "PATCH",
                f"{self._api_base}/crm/v3/objects/{entity_name}/{external_id}",
                json=payload,
            )
            return UpsertResult(external_id=external_id, created=False)

        response = await self._request(
            connection,
            "create",
            "POST",
            f"{self._api_base}/crm/v3/objects/{entity_name}",
            json=payload,
        )
        new_id = str(response.json().get("id") or "")
        if not new_id:
            raise ProviderError(f"HubSpot create of {entity_name} returned no record ID")
        return UpsertResult(external_id=new_id, created=True)

    # ── Webhooks ────────────────────────────────────────────────────────────

    @staticmethod
    def _to_event(item: dict[str, Any], raw: str) -> WebhookEvent | None:
        subscription = str(item.get("subscriptionType") or "")
        object_id = item.get("objectId")
        if "." not in subscription or object_id is None:
            return None
        prefix, event_type = subscription.split(".", 1)
        entity_name = _WEBHOOK_OBJECTS.get(prefix.lower())
        if entity_name is None:
            logger.debug("hubspot.webhook_unknown_object", subscription_type=subscription)
            return None
        occurred = item.get("occurredAt")
        event_time = (
            datetime.fromtimestamp(int(occurred) / 1000, tz=timezone.utc)
            if occurred is not None
            else datetime.now(timezone.utc)
        )
        return WebhookEvent(
            event_type=event_type,
            entity_name=entity_name,
            record_id=str(object_id),
            event_time=event_time,
            raw_payload=raw,
        )

    def parse_webhook_events(
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> list[WebhookEvent]:
        raw = raw_body.decode("utf-8", errors="replace")
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("hubspot.webhook_invalid_json")
            return []
        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list):
            return []
        events = []
        for item in payload:
            if isinstance(item, dict):
                event = self._to_event(item, raw)
                if event is not None:
                    events.append(event)
        return events

    def parse_webhook_payload(
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookEvent | None:
        events = self.parse_webhook_events(raw_body, headers)
        return events[0] if events else None

    def validate_webhook_signature(
        self, raw_body: bytes, headers: Mapping[str, str], secret: str
    ) -> bool:
        expected = hashlib.sha256(secret.encode("utf-8") + raw_body).hexdigest()
        return signatures_match(expected, httpx.Headers(headers).get(SIGNATURE_HEADER))
