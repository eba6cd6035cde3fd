"""Webhook ingress -- verify, parse and forward CRM change notifications.

Flow per delivery:
1. Load the connection and its provider (unknown or disabled connections are rejected)
2. Verify the signature when the connection (or provider app) has a secret;
   unsigned deliveries are accepted with a warning when no secret is configured
3. Parse every event in the body (HubSpot batches several per request)
4. Forward each event to SyncEngine.handle_webhook_event()

The result folds every forwarded event's outcome into one SyncResult.
"""

from __future__ import annotations

from collections.abc import Mapping

import structlog

from src.crmsync.crm.errors import ConfigurationError
from src.crmsync.crm.mapping_store import MappingConfigStore
from src.crmsync.crm.providers.factory import ProviderRegistry
from src.crmsync.crm.schemas import FailureKind, SyncResult, SyncRunState, SyncStats
from src.crmsync.crm.store import CrmStore
from src.crmsync.crm.sync import SyncEngine, new_sync_id

logger = structlog.get_logger(__name__)


def _combine(results: list[SyncResult]) -> SyncResult:
    """Merge per-event results; the delivery succeeds only if every event did."""
    stats = SyncStats()
    errors: list[str] = []
    for result in results:
        for name in (
            "total_processed", "success_count", "failed_count", "conflict_count", "skipped_count",
            "inbound_count", "outbound_count", "created_count", "updated_count", "deleted_count",
            "linked_by_match_count",
        ):
            setattr(stats, name, getattr(stats, name) + getattr(result.stats, name))
        errors.extend(result.errors)

    failed = next((r for r in results if r.state == SyncRunState.FAILED), None)
    return SyncResult(
        success=all(r.success for r in results),
        state=failed.state if failed else SyncRunState.COMPLETED,
        failure_kind=failed.failure_kind if failed else None,
        message=failed.message if failed else f"Processed {len(results)} webhook event(s)",
        sync_id=results[0].sync_id if len(results) == 1 else new_sync_id(),
        stats=stats,
        errors=errors,
        duration_ms=sum(r.duration_ms for r in results),
    )


def _rejected(kind: FailureKind, message: str) -> SyncResult:
    return SyncResult(
        success=False,
        state=SyncRunState.FAILED,
        failure_kind=kind,
        message=message,
        sync_id=new_sync_id(),
    )


class WebhookReceiver:
    """Entry point for raw webhook deliveries for one tenant.

    Args:
        tenant_id: Tenant owning the connections.
        store: CRM configuration store.
        providers: Provider registry.
        engine: Sync engine that applies the events.
    """

    def __init__(
        self,
        tenant_id: str,
        store: CrmStore,
        providers: ProviderRegistry,
        engine: SyncEngine,
    ) -> None:
        self._tenant_id = tenant_id
        self._providers = providers
        self._engine = engine
        self._config = MappingConfigStore(tenant_id, store, providers)

    async def receive(
        self, connection_id: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> SyncResult:
        """Verify and apply one webhook delivery. Never raises."""
        log = logger.bind(tenant_id=self._tenant_id, connection_id=connection_id)

        try:
            connection = await self._config.get_connection(connection_id)
            if not connection.is_enabled:
                raise ConfigurationError(f"CRM connection {connection_id} is disabled")
            provider = self._providers.get_provider(connection.provider)
        except ConfigurationError as exc:
            log.warning("crm_webhook.rejected", reason=str(exc))
            return _rejected(FailureKind.CONFIGURATION, str(exc))

        secret = provider.webhook_secret_for(connection)
        if secret:
            if not provider.validate_webhook_signature(raw_body, headers, secret):
                log.warning("crm_webhook.invalid_signature", provider=connection.provider.value)
                return _rejected(FailureKind.AUTHENTICATION, "Webhook signature verification failed")
        else:
            log.warning("crm_webhook.unsigned_accepted", provider=connection.provider.value)

        events = provider.parse_webhook_events(raw_body, headers)
        if not events:
            log.info("crm_webhook.no_events")
            return SyncResult(
                success=True,
                state=SyncRunState.COMPLETED,
                message="Webhook carried no syncable events",
                sync_id=new_sync_id(),
            )

        results = []
        for event in events:
            log.debug(
                "crm_webhook.event",
                event_type=event.event_type,
                entity_name=event.entity_name,
                record_id=event.record_id,
            )
            results.append(await self._engine.handle_webhook_event(
                connection_id, event.event_type, event.entity_name, event.record_id
            ))

        combined = _combine(results)
        log.info(
            "crm_webhook.processed",
            events=len(events),
            success=combined.success,
            failed=combined.stats.failed_count,
        )
        return combined
