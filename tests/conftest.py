"""Shared fixtures for CRM sync tests.

Provides:
- In-memory CRM and entity stores, fake provider, coordinator and broadcaster
- A provider registry serving the fake provider as HubSpot
- A saved, enabled connection for tenant-1
- A SyncEngine wired over all of the above

No database, Redis or network access is needed.
"""

from __future__ import annotations

import pytest

from src.crmsync.crm.ledger import CorrespondenceLedger
from src.crmsync.crm.providers.factory import ProviderRegistry
from src.crmsync.crm.schemas import Connection, ProviderType
from src.crmsync.crm.sync import SyncEngine
from tests.fakes import (
    TENANT_ID,
    FakeCoordinator,
    FakeProvider,
    InMemoryCrmStore,
    InMemoryEntityStore,
    RecordingBroadcaster,
    make_connection,
)


@pytest.fixture
def store() -> InMemoryCrmStore:
    return InMemoryCrmStore()


@pytest.fixture
def entities() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(provider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(ProviderType.HUBSPOT, lambda: provider)
    return registry


@pytest.fixture
def coordinator() -> FakeCoordinator:
    return FakeCoordinator()


@pytest.fixture
def progress() -> RecordingBroadcaster:
    return RecordingBroadcaster(TENANT_ID)


@pytest.fixture
def ledger(store, coordinator) -> CorrespondenceLedger:
    return CorrespondenceLedger(TENANT_ID, store, coordinator)


@pytest.fixture
def connection(store) -> Connection:
    connection = make_connection()
    store.connections[connection.id] = connection
    return connection


@pytest.fixture
def engine(store, entities, registry, ledger, coordinator, progress, connection) -> SyncEngine:
    return SyncEngine(
        TENANT_ID,
        store,
        entities,
        registry,
        ledger,
        coordinator,
        progress,
        max_concurrency=4,
        max_reported_errors=5,
    )
