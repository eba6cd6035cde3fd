"""Unit tests for CRM providers and the provider registry.

HTTP traffic goes through httpx.MockTransport; no real CRM is contacted.
Retries run with retry_wait=0 so backoff never sleeps.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone

import httpx
import pytest

from src.crmsync.config import Settings
from src.crmsync.crm.errors import (
    AuthenticationError,
    ConfigurationError,
    ProviderError,
    ProviderUnavailableError,
    UnsupportedProviderError,
)
from src.crmsync.crm.providers.dynamics import (
    WEBHOOK_KEY_HEADER,
    DynamicsProvider,
    entity_set_name,
)
from src.crmsync.crm.providers.factory import ProviderRegistry, default_registry
from src.crmsync.crm.providers.hubspot import SIGNATURE_HEADER, HubSpotProvider, modified_property
from src.crmsync.crm.schemas import ProviderType
from tests.fakes import make_connection

DYNAMICS_URL = "https://org.api.crm.dynamics.com"
API = f"{DYNAMICS_URL}/api/data/v9.2"


# ── Helpers ────────────────────────────────────────────────────────────────


class _Recorder:
    """MockTransport handler that serves queued responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _hubspot(recorder: _Recorder, **kwargs) -> HubSpotProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return HubSpotProvider(http_client=client, retry_wait=0, **kwargs)


def _hubspot_connection(**overrides):
    defaults = {"credentials": {"access_token": "pat-123"}}
    defaults.update(overrides)
    return make_connection(**defaults)


def _dynamics(handler) -> DynamicsProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DynamicsProvider(http_client=client, retry_wait=0)


def _dynamics_connection(**overrides):
    defaults = {
        "provider": ProviderType.DYNAMICS365,
        "environment_url": DYNAMICS_URL,
        "credentials": {"client_id": "cid", "client_secret": "secret", "tenant_id": "aad-tenant"},
    }
    defaults.update(overrides)
    return make_connection(**defaults)


def _token_response() -> httpx.Response:
    return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})


# ── HTTP Error Handling ────────────────────────────────────────────────────


class TestHttpErrorMapping:
    """Test status mapping and retries shared by every HTTP provider."""

    async def test_unauthorized_raises_authentication_error(self):
        recorder = _Recorder(httpx.Response(401, json={"message": "expired"}))
        provider = _hubspot(recorder)

        with pytest.raises(AuthenticationError, match="HTTP 401"):
            await provider.upsert(_hubspot_connection(), "contacts", None, {"email": "a@x.com"})
        assert len(recorder.requests) == 1

    async def test_server_error_is_retried_then_raised(self):
        recorder = _Recorder(httpx.Response(500, json={"message": "boom"}))
        provider = _hubspot(recorder)

        with pytest.raises(ProviderError) as exc_info:
            await provider.upsert(_hubspot_connection(), "contacts", "1", {"email": "a@x.com"})
        assert exc_info.value.status_code == 500
        assert "boom" in str(exc_info.value)
        assert len(recorder.requests) == HubSpotProvider.MAX_ATTEMPTS

    async def test_transient_error_recovers(self):
        recorder = _Recorder(
            httpx.Response(429),
            httpx.Response(200, json={"id": "1", "properties": {"email": "a@x.com"}}),
        )
        provider = _hubspot(recorder)

        record = await provider.get_record(_hubspot_connection(), "contacts", "1")

        assert record.fields == {"email": "a@x.com"}
        assert len(recorder.requests) == 2

    async def test_client_error_is_not_retried(self):
        recorder = _Recorder(httpx.Response(400, json={"error": {"message": "Property 'x' does not exist"}}))
        provider = _hubspot(recorder)

        with pytest.raises(ProviderError, match="does not exist"):
            await provider.upsert(_hubspot_connection(), "contacts", None, {"x": 1})
        assert len(recorder.requests) == 1

    async def test_transport_failure_is_unavailable(self):
        recorder = _Recorder(httpx.ConnectError("refused"))
        provider = _hubspot(recorder)

        with pytest.raises(ProviderUnavailableError, match="unreachable"):
            await provider.get_record(_hubspot_connection(), "contacts", "1")
        assert len(recorder.requests) == HubSpotProvider.MAX_ATTEMPTS

    async def test_validate_connection_never_raises(self):
        provider = _hubspot(_Recorder(httpx.Response(403)))
        assert await provider.validate_connection(_hubspot_connection()) is False

    async def test_validate_connection_success(self):
        provider = _hubspot(_Recorder(httpx.Response(200, json={"results": []})))
        assert await provider.validate_connection(_hubspot_connection()) is True


# ── HubSpot ────────────────────────────────────────────────────────────────


class TestHubSpotProvider:
    """Test the HubSpot v3 provider."""

    async def test_missing_token_fails_validation(self):
        recorder = _Recorder(httpx.Response(200, json={}))
        provider = _hubspot(recorder)

        assert await provider.validate_connection(_hubspot_connection(credentials={})) is False
        assert recorder.requests == []

    async def test_create_posts_properties(self):
        recorder = _Recorder(httpx.Response(201, json={"id": "101"}))
        provider = _hubspot(recorder)

        result = await provider.upsert(
            _hubspot_connection(), "contacts", None, {"email": "a@x.com", "lastname": None}
        )

        assert (result.external_id, result.created) == ("101", True)
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/crm/v3/objects/contacts"
        assert request.headers["Authorization"] == "Bearer pat-123"
        assert json.loads(request.content) == {"properties": {"email": "a@x.com", "lastname": ""}}

    async def test_create_without_id_is_provider_error(self):
        provider = _hubspot(_Recorder(httpx.Response(201, json={})))
        with pytest.raises(ProviderError, match="no record ID"):
            await provider.upsert(_hubspot_connection(), "contacts", None, {"email": "a@x.com"})

    async def test_update_patches_record(self):
        recorder = _Recorder(httpx.Response(200, json={"id": "101"}))
        provider = _hubspot(recorder)

        result = await provider.upsert(_hubspot_connection(), "contacts", "101", {"lastname": "Byron"})

        assert result.created is False
        assert recorder.requests[0].method == "PATCH"
        assert recorder.requests[0].url.path == "/crm/v3/objects/contacts/101"

    async def test_get_missing_record_is_none(self):
        provider = _hubspot(_Recorder(httpx.Response(404, json={"message": "not found"})))
        assert await provider.get_record(_hubspot_connection(), "contacts", "404") is None

    async def test_full_read_follows_paging(self):
        recorder = _Recorder(
            httpx.Response(200, json={
                "results": [{"id": "1", "properties": {"email": "a@x.com"}, "updatedAt": "2026-01-02T03:04:05Z"}],
                "paging": {"next": {"after": "cursor-2"}},
            }),
            httpx.Response(200, json={"results": [{"id": "2", "properties": {"email": "b@x.com"}}]}),
        )
        provider = _hubspot(recorder)

        records = [
            r async for r in provider.read_changed(_hubspot_connection(), "contacts", fields=["email", "firstname"])
        ]

        assert [r.id for r in records] == ["1", "2"]
        assert records[0].modified_on == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert recorder.requests[0].url.params["properties"] == "email,firstname"
        assert recorder.requests[1].url.params["after"] == "cursor-2"

    async def test_incremental_read_uses_search(self):
        recorder = _Recorder(httpx.Response(200, json={"results": []}))
        provider = _hubspot(recorder)
        since = datetime(2026, 1, 1, tzinfo=timezone.utc)

        records = [r async for r in provider.read_changed(_hubspot_connection(), "companies", since=since)]

        assert records == []
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/crm/v3/objects/companies/search"
        body = json.loads(request.content)
        assert body["filterGroups"][0]["filters"] == [{
            "propertyName": "hs_lastmodifieddate",
            "operator": "GTE",
            "value": str(int(since.timestamp() * 1000)),
        }]

    async def test_filter_expression_is_appended(self):
        recorder = _Recorder(httpx.Response(200, json={"results": []}))
        provider = _hubspot(recorder)
        expression = '[{"propertyName": "lifecyclestage", "operator": "EQ", "value": "customer"}]'

        [r async for r in provider.read_changed(_hubspot_connection(), "contacts", filter_expression=expression)]

        filters = json.loads(recorder.requests[0].content)["filterGroups"][0]["filters"]
        assert filters == [{"propertyName": "lifecyclestage", "operator": "EQ", "value": "customer"}]

    async def test_find_by_field_searches_for_equal_value(self):
        recorder = _Recorder(httpx.Response(200, json={
            "results": [{"id": "7", "properties": {"email": "ada@example.com"}}],
        }))
        provider = _hubspot(recorder)

        records = await provider.find_by_field(_hubspot_connection(), "contacts", "email", "Ada@Example.com")

        assert [r.id for r in records] == ["7"]
        request = recorder.requests[0]
        assert request.url.path == "/crm/v3/objects/contacts/search"
        body = json.loads(request.content)
        assert body["filterGroups"][0]["filters"] == [
            {"propertyName": "email", "operator": "EQ", "value": "Ada@Example.com"},
        ]
        assert body["properties"] == ["email"]

    async def test_invalid_filter_expression(self):
        provider = _hubspot(_Recorder(httpx.Response(200, json={"results": []})))
        with pytest.raises(ConfigurationError):
            [r async for r in provider.read_changed(_hubspot_connection(), "contacts", filter_expression="{bad")]

    def test_modified_property(self):
        assert modified_property("contacts") == "lastmodifieddate"
        assert modified_property("deals") == "hs_lastmodifieddate"

    def test_webhook_signature(self):
        provider = _hubspot(_Recorder(httpx.Response(200)))
        body = b'[{"objectId": 1}]'
        signature = hashlib.sha256(b"app-secret" + body).hexdigest()

        assert provider.validate_webhook_signature(body, {SIGNATURE_HEADER: signature}, "app-secret")
        assert provider.validate_webhook_signature(body, {SIGNATURE_HEADER.lower(): signature}, "app-secret")
        assert not provider.validate_webhook_signature(body, {SIGNATURE_HEADER: "0" * 64}, "app-secret")
        assert not provider.validate_webhook_signature(body, {}, "app-secret")

    def test_webhook_secret_falls_back_to_app_secret(self):
        provider = _hubspot(_Recorder(httpx.Response(200)), client_secret="app-secret")
        assert provider.webhook_secret_for(_hubspot_connection()) == "app-secret"
        assert provider.webhook_secret_for(_hubspot_connection(webhook_secret="own")) == "own"

    def test_parse_webhook_events(self):
        provider = _hubspot(_Recorder(httpx.Response(200)))
        body = json.dumps([
            {"subscriptionType": "contact.propertyChange", "objectId": 123, "occurredAt": 1767225600000},
            {"subscriptionType": "company.deletion", "objectId": 9},
            {"subscriptionType": "line_item.creation", "objectId": 5},
            {"objectId": 6},
        ]).encode()

        events = provider.parse_webhook_events(body, {})

        assert [(e.event_type, e.entity_name, e.record_id) for e in events] == [
            ("propertyChange", "contacts", "123"),
            ("deletion", "companies", "9"),
        ]
        assert events[0].event_time == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_parse_invalid_webhook_body(self):
        provider = _hubspot(_Recorder(httpx.Response(200)))
        assert provider.parse_webhook_events(b"not json", {}) == []
        assert provider.parse_webhook_payload(b"[]", {}) is None


# ── Dynamics 365 ───────────────────────────────────────────────────────────


class TestDynamicsProvider:
    """Test the Dataverse Web API provider."""

    @pytest.mark.parametrize(
        "logical,expected",
        [
            ("contact", "contacts"),
            ("opportunity", "opportunities"),
            ("territory", "territories"),
            ("survey", "surveys"),
            ("address", "addresses"),
            ("new_project", "new_projects"),
        ],
    )
    def test_entity_set_name(self, logical, expected):
        assert entity_set_name(logical) == expected

    def test_format_lookup_value(self):
        provider = _dynamics(lambda request: httpx.Response(200))
        assert provider.format_lookup_value("parentcustomerid_account@odata.bind", "account", "abc") == "/accounts(abc)"
        assert provider.format_lookup_value("new_code", "account", "abc") == "abc"

    def test_lookup_field_candidates(self):
        provider = _dynamics(lambda request: httpx.Response(200))
        assert provider.lookup_field_candidates("parentcustomerid_account@odata.bind") == [
            "parentcustomerid_account",
            "_parentcustomerid_account_value",
            "_parentcustomerid_value",
        ]
        assert provider.lookup_field_candidates("ownerid") == ["ownerid", "_ownerid_value"]

    async def test_token_is_acquired_once_and_cached(self):
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.host)
            if request.url.host == "login.microsoftonline.com":
                assert b"scope=https%3A%2F%2Forg.crm.dynamics.com%2F.default" in request.content
                return _token_response()
            assert request.headers["Authorization"] == "Bearer tok"
            return httpx.Response(200, json={"UserId": "u"})

        provider = _dynamics(handler)
        connection = _dynamics_connection()

        assert await provider.validate_connection(connection) is True
        assert await provider.validate_connection(connection) is True
        assert calls.count("login.microsoftonline.com") == 1

    async def test_rejected_token_fails_validation(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_client", "error_description": "bad secret"})

        provider = _dynamics(handler)
        assert await provider.validate_connection(_dynamics_connection()) is False

    async def test_token_error_is_authentication_error(self):
        provider = _dynamics(lambda request: httpx.Response(401, json={"error": "invalid_client"}))
        with pytest.raises(AuthenticationError, match="invalid_client"):
            await provider.get_record(_dynamics_connection(), "contact", "abc")

    async def test_missing_credentials(self):
        provider = _dynamics(lambda request: httpx.Response(200))
        with pytest.raises(AuthenticationError, match="client_id"):
            await provider.get_record(_dynamics_connection(credentials={}), "contact", "abc")

    async def test_missing_environment_url(self):
        provider = _dynamics(lambda request: httpx.Response(200))
        with pytest.raises(ConfigurationError, match="environment_url"):
            await provider.get_record(_dynamics_connection(environment_url=None), "contact", "abc")

    async def test_create_reads_id_from_entity_id_header(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "login.microsoftonline.com":
                return _token_response()
            requests.append(request)
            return httpx.Response(
                204,
                headers={"OData-EntityId": f"{API}/contacts(00000000-0000-0000-0000-0000000000aa)"},
            )

        provider = _dynamics(handler)
        result = await provider.upsert(
            _dynamics_connection(), "contact", None, {"contactid": "x", "firstname": "Ada"}
        )

        assert result.external_id == "00000000-0000-0000-0000-0000000000aa"
        assert result.created is True
        assert json.loads(requests[0].content) == {"firstname": "Ada"}
        assert str(requests[0].url) == f"{API}/contacts"

    async def test_update_uses_if_match(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "login.microsoftonline.com":
                return _token_response()
            requests.append(request)
            return httpx.Response(204)

        provider = _dynamics(handler)
        result = await provider.upsert(_dynamics_connection(), "account", "abc", {"name": "Acme"})

        assert result.created is False
        assert requests[0].method == "PATCH"
        assert requests[0].headers["If-Match"] == "*"
        assert str(requests[0].url) == f"{API}/accounts(abc)"

    async def test_find_by_field_escapes_quotes(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "login.microsoftonline.com":
                return _token_response()
            requests.append(request)
            return httpx.Response(200, json={"value": [{"accountid": "a1", "name": "O'Brien Ltd"}]})

        provider = _dynamics(handler)
        records = await provider.find_by_field(_dynamics_connection(), "account", "name", "O'Brien Ltd")

        assert [r.id for r in records] == ["a1"]
        assert requests[0].url.path == "/api/data/v9.2/accounts"
        assert requests[0].url.params["$filter"] == "name eq 'O''Brien Ltd'"
        assert requests[0].url.params["$top"] == "10"

    async def test_incremental_read_follows_next_link(self):
        requests: list[httpx.Request] = []
        next_link = f"{API}/contacts?$skiptoken=2"

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "login.microsoftonline.com":
                return _token_response()
            requests.append(request)
            if len(requests) == 1:
                return httpx.Response(200, json={
                    "value": [{
                        "contactid": "c1",
                        "firstname": "Ada",
                        "_parentcustomerid_value": "a1",
                        "_parentcustomerid_value@OData.Community.Display.V1.FormattedValue": "Acme",
                        "@odata.etag": "W/\"1\"",
                        "modifiedon": "2026-02-01T00:00:00Z",
                    }],
                    "@odata.nextLink": next_link,
                })
            return httpx.Response(200, json={"value": [{"contactid": "c2"}]})

        provider = _dynamics(handler)
        since = datetime(2026, 1, 1, tzinfo=timezone.utc)
        records = [r async for r in provider.read_changed(_dynamics_connection(), "contact", since=since)]

        assert [r.id for r in records] == ["c1", "c2"]
        assert records[0].fields == {
            "contactid": "c1",
            "firstname": "Ada",
            "_parentcustomerid_value": "a1",
            "modifiedon": "2026-02-01T00:00:00Z",
        }
        assert records[0].modified_on == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert requests[0].url.params["$filter"] == "modifiedon gt 2026-01-01T00:00:00Z"
        assert requests[1].url.params["$skiptoken"] == "2"
        assert "$filter" not in requests[1].url.params

    def test_parse_remote_execution_context(self):
        provider = _dynamics(lambda request: httpx.Response(200))
        body = json.dumps({
            "MessageName": "Update",
            "PrimaryEntityName": "contact",
            "PrimaryEntityId": "c1",
            "OperationCreatedOn": "2026-03-01T10:00:00Z",
            "InputParameters": [
                {"key": "Target", "value": {"Attributes": [{"key": "firstname", "value": "Ada"}]}},
            ],
        }).encode()

        event = provider.parse_webhook_payload(body, {})

        assert (event.event_type, event.entity_name, event.record_id) == ("update", "contact", "c1")
        assert event.record.fields == {"firstname": "Ada"}
        assert provider.parse_webhook_events(body, {})[0].record_id == "c1"

    def test_parse_incomplete_context(self):
        provider = _dynamics(lambda request: httpx.Response(200))
        assert provider.parse_webhook_payload(b'{"MessageName": "Create"}', {}) is None
        assert provider.parse_webhook_events(b"nope", {}) == []

    def test_webhook_key_header(self):
        provider = _dynamics(lambda request: httpx.Response(200))
        assert provider.validate_webhook_signature(b"{}", {WEBHOOK_KEY_HEADER: "shared"}, "shared")
        assert not provider.validate_webhook_signature(b"{}", {WEBHOOK_KEY_HEADER: "other"}, "shared")


# ── Registry ───────────────────────────────────────────────────────────────


class TestProviderRegistry:
    """Test capability-checked provider lookup."""

    def test_provider_is_built_once(self):
        registry = ProviderRegistry()
        built = []
        registry.register(ProviderType.HUBSPOT, lambda: built.append(1) or _hubspot(_Recorder(httpx.Response(200))))

        first = registry.get_provider(ProviderType.HUBSPOT)
        second = registry.get_provider("hubspot")

        assert first is second
        assert built == [1]

    def test_unregistered_provider(self):
        registry = ProviderRegistry()
        assert registry.is_supported(ProviderType.SALESFORCE) is False
        assert registry.is_supported("not-a-crm") is False
        with pytest.raises(UnsupportedProviderError):
            registry.get_provider(ProviderType.SALESFORCE)
        with pytest.raises(UnsupportedProviderError):
            registry.get_provider("not-a-crm")

    def test_ensure_supported_is_configuration_error(self):
        registry = ProviderRegistry()
        with pytest.raises(ConfigurationError):
            registry.ensure_supported(make_connection(provider=ProviderType.SALESFORCE))

    def test_default_registry(self):
        settings = Settings(_env_file=None, HUBSPOT_CLIENT_SECRET="app-secret")
        registry = default_registry(settings, httpx.AsyncClient())

        assert set(registry.supported_providers()) == {ProviderType.DYNAMICS365, ProviderType.HUBSPOT}
        hubspot = registry.get_provider(ProviderType.HUBSPOT)
        assert isinstance(hubspot, HubSpotProvider)
        assert hubspot.webhook_secret_for(make_connection()) == "app-secret"
        assert isinstance(registry.get_provider(ProviderType.DYNAMICS365), DynamicsProvider)
