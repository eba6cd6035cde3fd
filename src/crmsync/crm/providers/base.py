"""CRM provider abstract base class and shared HTTP plumbing.

Every external CRM backend (Dynamics 365, HubSpot, future Salesforce)
implements CRMProvider. The sync engine only ever talks to this interface,
so provider-specific REST mechanics never leak into orchestration.

HttpCRMProvider adds the common HTTP layer:
- httpx.AsyncClient injected (tests pass one backed by httpx.MockTransport)
- tenacity retry with exponential backoff on transport errors, 429 and 5xx
- Status mapping: 401/403 -> AuthenticationError, exhausted transport
  failures -> ProviderUnavailableError, any other failure -> ProviderError
- Prometheus request metrics per provider operation
"""

from __future__ import annotations

import hmac
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping, Sequence
from datetime import datetime
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crmsync.core.monitoring import track_provider_call
from src.crmsync.crm.errors import (
    AuthenticationError,
    CrmSyncError,
    ProviderError,
    ProviderUnavailableError,
)
from src.crmsync.crm.schemas import (
    Connection,
    EntitySchema,
    ExternalRecord,
    FieldSchema,
    ProviderType,
    UpsertResult,
    WebhookEvent,
)

logger = structlog.get_logger(__name__)


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison of a computed and a received signature."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


class CRMProvider(ABC):
    """Abstract interface for one external CRM vendor.

    Methods:
        validate_connection: Probe credentials; never raises.
        list_entities / list_fields: Schema discovery.
        read_changed: Stream records, optionally only those modified after ``since``.
        get_record: Fetch one record by ID.
        find_by_field: Look up records by an identity field value.
        upsert: Create (external_id None) or update one record.
        parse_webhook_payload / validate_webhook_signature: Webhook ingress.
    """

    provider_type: ProviderType

    @abstractmethod
    async def validate_connection(self, connection: Connection) -> bool:
        """Return True if the connection's credentials work. Fails closed."""
        ...

    @abstractmethod
    async def list_entities(self, connection: Connection) -> list[EntitySchema]:
        ...

    @abstractmethod
    async def list_fields(self, connection: Connection, entity_name: str) -> list[FieldSchema]:
        ...

    @abstractmethod
    def read_changed(
        self,
        connection: Connection,
        entity_name: str,
        since: datetime | None = None,
        filter_expression: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> AsyncIterator[ExternalRecord]:
        """Stream records of ``entity_name``; ``since=None`` means all records.

        Args:
            fields: External fields the caller needs. Providers that return
                only default properties unless asked use it; others ignore it.
        """
        ...

    @abstractmethod
    async def get_record(
        self, connection: Connection, entity_name: str, record_id: str
    ) -> ExternalRecord | None:
        """Fetch one record, or None if it does not exist."""
        ...

    @abstractmethod
    async def find_by_field(
        self, connection: Connection, entity_name: str, field_name: str, value: str
    ) -> list[ExternalRecord]:
        """Records whose ``field_name`` equals ``value`` (case-insensitive where the CRM allows).

        Used to match an unlinked internal record to an existing CRM record
        before creating one. Returns at most a handful of candidates.
        """
        ...

    @abstractmethod
    async def upsert(
        self,
        connection: Connection,
        entity_name: str,
        external_id: str | None,
        fields: dict[str, Any],
    ) -> UpsertResult:
        """Create the record when ``external_id`` is None, otherwise update it."""
        ...

    @abstractmethod
    def parse_webhook_payload(
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookEvent | None:
        """Parse a delivery into one event, or None if it carries nothing to sync."""
        ...

    def parse_webhook_events(
        self, raw_body: bytes, headers: Mapping[str, str]
    ) -> list[WebhookEvent]:
        """All events in a delivery. Providers that batch events override this."""
        event = self.parse_webhook_payload(raw_body, headers)
        return [event] if event is not None else []

    @abstractmethod
    def validate_webhook_signature(
        self, raw_body: bytes, headers: Mapping[str, str], secret: str
    ) -> bool:
        ...

    def webhook_secret_for(self, connection: Connection) -> str | None:
        """Secret that signs webhook deliveries for ``connection``, if any."""
        return connection.webhook_secret or None

    def format_lookup_value(self, lookup_field: str, related_entity: str, external_id: str) -> Any:
        """Value written to a lookup field that points at ``external_id``."""
        return external_id

    def lookup_field_candidates(self, lookup_field: str) -> list[str]:
        """Record field names under which a lookup's value may be read back."""
        return [lookup_field]


class _TransientStatusError(Exception):
    """Internal marker so tenacity retries 429/5xx responses."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class HttpCRMProvider(CRMProvider):
    """Shared httpx request handling for REST-based providers.

    Args:
        http_client: Shared async client. A private one is created if omitted.
        timeout: Request timeout in seconds for the private client.
        retry_wait: Base backoff in seconds between attempts (0 disables waiting).
    """

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        retry_wait: float = 1.0,
    ) -> None:
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._retry_wait = retry_wait

    @abstractmethod
    async def _auth_headers(self, connection: Connection) -> dict[str, str]:
        """Headers authenticating a request for ``connection``."""
        ...

    @abstractmethod
    async def _probe(self, connection: Connection) -> None:
        """Cheapest authenticated call; raises on failure."""
        ...

    async def validate_connection(self, connection: Connection) -> bool:
        try:
            await self._probe(connection)
        except (CrmSyncError, httpx.HTTPError) as exc:
            logger.warning(
                "crm_provider.validation_failed",
                provider=self.provider_type.value,
                connection_id=connection.id,
                error=str(exc),
            )
            return False
        return True

    async def _request(
        self,
        connection: Connection,
        operation: str,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request with retry, metrics and error mapping.

        Raises:
            AuthenticationError: On 401/403.
            ProviderUnavailableError: If every attempt failed at the transport level.
            ProviderError: On any other non-success response.
        """
        provider = self.provider_type.value
        async with track_provider_call(provider, operation) as tracker:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.MAX_ATTEMPTS),
                    wait=wait_exponential(multiplier=self._retry_wait, min=self._retry_wait, max=10),
                    retry=retry_if_exception_type((httpx.TransportError, _TransientStatusError)),
                    reraise=True,
                ):
                    with attempt:
                        request_headers = {**await self._auth_headers(connection), **(headers or {})}
                        response = await self._http.request(method, url, headers=request_headers, **kwargs)
                        if response.status_code == 429 or response.status_code >= 500:
                            raise _TransientStatusError(response)
            except httpx.TransportError as exc:
                raise ProviderUnavailableError(
                    f"{provider} unreachable during {operation}: {exc.__class__.__name__}: {exc}"
                ) from exc
            except _TransientStatusError as exc:
                response = exc.response

            tracker["status_code"] = response.status_code
            if response.status_code in (401, 403):
                raise AuthenticationError(
                    f"{provider} rejected credentials during {operation} (HTTP {response.status_code})"
                )
            if response.is_error:
                raise ProviderError(
                    f"{provider} {operation} failed with HTTP {response.status_code}: "
                    f"{_error_detail(response)}",
                    status_code=response.status_code,
                )
            return response


def _error_detail(response: httpx.Response) -> str:
    """Best-effort human-readable error text from a provider response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
    return response.text[:500]
