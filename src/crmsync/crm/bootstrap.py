"""Service wiring for one tenant.

build_services() assembles the sync engine and its collaborators from the
process-wide database session factory, Redis pool and provider registry.
Workers, the scheduler and the CLI all go through it; tests pass their own
stores and Redis client instead.
"""

from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as aioredis

from src.crmsync.config import Settings, get_settings
from src.crmsync.core.database import get_tenant_session
from src.crmsync.core.redis import get_redis_pool
from src.crmsync.crm.coordination import SyncCoordinator
from src.crmsync.crm.duplicates import DuplicateDetector
from src.crmsync.crm.entities import EntityRepository
from src.crmsync.crm.ledger import CorrespondenceLedger
from src.crmsync.crm.mapping_store import MappingConfigStore
from src.crmsync.crm.progress import ProgressBroadcaster
from src.crmsync.crm.providers.factory import ProviderRegistry, default_registry
from src.crmsync.crm.reporting import SyncReporter
from src.crmsync.crm.repository import CrmRepository
from src.crmsync.crm.store import CrmStore, InternalEntityStore
from src.crmsync.crm.sync import SyncEngine
from src.crmsync.crm.webhooks import WebhookReceiver


@dataclass
class CrmSyncServices:
    """Everything a caller needs to drive CRM sync for one tenant."""

    tenant_id: str
    store: CrmStore
    entities: InternalEntityStore
    providers: ProviderRegistry
    coordinator: SyncCoordinator
    ledger: CorrespondenceLedger
    progress: ProgressBroadcaster
    engine: SyncEngine
    config: MappingConfigStore
    duplicates: DuplicateDetector
    reporter: SyncReporter
    webhooks: WebhookReceiver


def build_services(
    tenant_id: str,
    *,
    store: CrmStore | None = None,
    entities: InternalEntityStore | None = None,
    providers: ProviderRegistry | None = None,
    redis: aioredis.Redis | None = None,
    settings: Settings | None = None,
) -> CrmSyncServices:
    """Wire the CRM sync services for ``tenant_id``.

    Args:
        tenant_id: Tenant the services act for. The caller is responsible for
            running them inside a matching tenant_scope() when the default
            SQLAlchemy stores are used.
        store: CRM persistence; defaults to CrmRepository over get_tenant_session.
        entities: Internal entity persistence; defaults to EntityRepository.
        providers: Provider registry; defaults to default_registry(settings).
        redis: Redis client; defaults to the shared pool.
        settings: App settings; defaults to get_settings().
    """
    settings = settings or get_settings()
    store = store or CrmRepository(get_tenant_session)
    entities = entities or EntityRepository(get_tenant_session)
    providers = providers or default_registry(settings)
    redis = redis or get_redis_pool()

    coordinator = SyncCoordinator(
        redis,
        tenant_id,
        lock_ttl=settings.CRM_SYNC_LOCK_TTL_SECONDS,
        record_lock_timeout=settings.CRM_RECORD_LOCK_TIMEOUT_SECONDS,
        cancel_ttl=settings.CRM_CANCEL_TTL_SECONDS,
    )
    ledger = CorrespondenceLedger(tenant_id, store, coordinator)
    progress = ProgressBroadcaster(redis, tenant_id, ttl_seconds=settings.CRM_PROGRESS_TTL_SECONDS)
    engine = SyncEngine(
        tenant_id,
        store,
        entities,
        providers,
        ledger,
        coordinator,
        progress,
        max_concurrency=settings.CRM_SYNC_MAX_CONCURRENCY,
        max_reported_errors=settings.CRM_MAX_REPORTED_ERRORS,
    )
    return CrmSyncServices(
        tenant_id=tenant_id,
        store=store,
        entities=entities,
        providers=providers,
        coordinator=coordinator,
        ledger=ledger,
        progress=progress,
        engine=engine,
        config=MappingConfigStore(tenant_id, store, providers),
        duplicates=DuplicateDetector(tenant_id, store, entities, providers, ledger),
        reporter=SyncReporter(
            tenant_id, store, providers, ledger, log_retention_days=settings.CRM_LOG_RETENTION_DAYS
        ),
        webhooks=WebhookReceiver(tenant_id, store, providers, engine),
    )
