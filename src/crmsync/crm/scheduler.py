"""Polling scheduler for incremental CRM syncs.

Wraps an APScheduler AsyncIOScheduler with a single interval job. Each tick
walks every tenant, and inside that tenant's scope runs sync_incremental()
for each enabled connection whose polling interval has elapsed since its
last attempt. A failing tenant or connection never blocks the others.

Exports:
    SyncScheduler: Interval-driven incremental sync across tenants.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.crmsync.config import get_settings
from src.crmsync.core.tenant import TenantContext, tenant_scope
from src.crmsync.crm.bootstrap import CrmSyncServices
from src.crmsync.crm.schemas import Connection

logger = structlog.get_logger(__name__)


def is_due(connection: Connection, now: datetime) -> bool:
    """True when the connection has never synced or its interval has elapsed."""
    if connection.last_sync_at is None:
        return True
    last = connection.last_sync_at
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return last + timedelta(minutes=connection.sync_interval_minutes) <= now


class SyncScheduler:
    """Interval scheduler that polls due connections across all tenants.

    Args:
        tenants: Async callable returning the active tenants.
        services_factory: Builds the CRM sync services for a tenant id.
        tick_seconds: Seconds between ticks; defaults to CRM_SCHEDULER_TICK_SECONDS.
    """

    def __init__(
        self,
        tenants: Callable[[], Awaitable[list[TenantContext]]],
        services_factory: Callable[[str], CrmSyncServices],
        tick_seconds: int | None = None,
    ) -> None:
        self._tenants = tenants
        self._services_factory = services_factory
        self._tick_seconds = tick_seconds or get_settings().CRM_SCHEDULER_TICK_SECONDS
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the interval job. Returns False if already started."""
        if self._started:
            return False

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._tick_seconds),
            id="crm_incremental_sync",
            name="Run incremental CRM syncs for due connections",
            misfire_grace_time=self._tick_seconds,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info("crm_scheduler.started", tick_seconds=self._tick_seconds)
        return True

    def stop(self) -> None:
        """Shut down the scheduler without waiting for a running tick."""
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("crm_scheduler.stopped")

    async def tick(self, now: datetime | None = None) -> int:
        """Run one polling pass over every tenant.

        Returns:
            Number of incremental syncs started.
        """
        now = now or datetime.now(timezone.utc)
        try:
            tenants = await self._tenants()
        except Exception as exc:
            logger.error("crm_scheduler.tenant_query_failed", error=str(exc))
            return 0

        started = 0
        for tenant in tenants:
            try:
                started += await self._tick_tenant(tenant, now)
            except Exception:
                logger.exception("crm_scheduler.tenant_failed", tenant_id=tenant.tenant_id)

        logger.debug("crm_scheduler.tick_finished", tenants=len(tenants), syncs=started)
        return started

    async def _tick_tenant(self, tenant: TenantContext, now: datetime) -> int:
        with tenant_scope(tenant):
            services = self._services_factory(tenant.tenant_id)
            connections = await services.store.list_connections(tenant.tenant_id, enabled_only=True)
            due = [c for c in connections if is_due(c, now)]

            for connection in due:
                result = await services.engine.sync_incremental(connection.id)
                logger.info(
                    "crm_scheduler.sync_finished",
                    tenant_id=tenant.tenant_id,
                    connection_id=connection.id,
                    sync_id=result.sync_id,
                    state=result.state.value,
                    success=result.success,
                )
            return len(due)
