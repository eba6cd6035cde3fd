"""Sync engine -- orchestrates runs between the internal store and external CRMs.

Every public entry point returns a SyncResult; none of them raise. Bulk runs
hold the connection's distributed lock; single-record runs (webhooks, change
triggers) rely on per-record locks only, so they proceed while a bulk run is
in flight. A run moves through

    IDLE -> AUTHENTICATING -> FETCHING -> MAPPING -> UPSERTING -> COMPLETED
                                  ^                      |
                                  +----------------------+   (next mapping)

and ends in FAILED or CANCELLED instead of COMPLETED when a connection-level
error aborts it or a cancellation is observed.

Record processing rules:
- Each record is processed under its own lock, so a webhook and a scheduled
  run never write the same record concurrently
- Bidirectional mappings run the inbound phase first, then the outbound phase
- Inbound: linked records take only the paths whose CRM value moved away from
  the ledger snapshot, so a pending local edit is never reverted by a value
  the CRM merely echoes back; unlinked records are first matched by identity
  (e.g. email) before a new internal record is created
- Outbound: linked records send only the paths whose value differs from the
  ledger snapshot; unlinked records are matched against the CRM by identity
  and the match is updated and linked, otherwise a new CRM record is created
- Record-level errors fail one record and the batch continues; connection-level
  errors stop new records from starting and abort the run
- The incremental watermark advances to the run's start time only when the
  run completed (no connection-level failure, not cancelled). Record failures
  do not hold it back; failed records are retried on the next full sync.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic_core import to_jsonable_python

from src.crmsync.core.monitoring import crm_sync_runs_in_progress, record_sync_outcome, record_sync_run
from src.crmsync.crm.accessors import InternalEntity, get_value, new_entity
from src.crmsync.crm.coordination import SyncCoordinator
from src.crmsync.crm.errors import (
    CONNECTION_LEVEL_ERRORS,
    RECORD_LEVEL_ERRORS,
    AuthenticationError,
    ConfigurationError,
    CrmSyncError,
    PersistenceError,
    ProviderError,
    ProviderUnavailableError,
    SyncAlreadyRunningError,
)
from src.crmsync.crm.field_mapping import (
    apply_inbound_values,
    build_outbound_payload,
    changed_paths,
    identity_fields,
    normalize_identity,
    read_inbound_values,
    snapshot_outbound,
)
from src.crmsync.crm.ledger import CorrespondenceLedger
from src.crmsync.crm.mapping_store import ConnectionConfig, MappingConfigStore
from src.crmsync.crm.progress import ProgressBroadcaster
from src.crmsync.crm.providers.base import CRMProvider
from src.crmsync.crm.providers.factory import ProviderRegistry
from src.crmsync.crm.reporting import tally_sync_log
from src.crmsync.crm.schemas import (
    Connection,
    CorrespondenceRecord,
    EntityMapping,
    ExternalRecord,
    FailureKind,
    InternalEntityType,
    ProgressStatus,
    RelationshipMapping,
    SyncAction,
    SyncDirection,
    SyncLogEntry,
    SyncMode,
    SyncProgress,
    SyncResult,
    SyncRunState,
    SyncStats,
    SyncStatus,
)
from src.crmsync.crm.store import CrmStore, InternalEntityStore

logger = structlog.get_logger(__name__)

_DELETE_EVENTS = frozenset({"delete", "deletion", "deleted"})

_TRANSITIONS: dict[SyncRunState, frozenset[SyncRunState]] = {
    SyncRunState.IDLE: frozenset({SyncRunState.AUTHENTICATING, SyncRunState.FAILED, SyncRunState.CANCELLED}),
    SyncRunState.AUTHENTICATING: frozenset({
        SyncRunState.FETCHING, SyncRunState.COMPLETED, SyncRunState.FAILED, SyncRunState.CANCELLED,
    }),
    SyncRunState.FETCHING: frozenset({SyncRunState.MAPPING, SyncRunState.FAILED, SyncRunState.CANCELLED}),
    SyncRunState.MAPPING: frozenset({SyncRunState.UPSERTING, SyncRunState.FAILED, SyncRunState.CANCELLED}),
    SyncRunState.UPSERTING: frozenset({
        SyncRunState.FETCHING, SyncRunState.COMPLETED, SyncRunState.FAILED, SyncRunState.CANCELLED,
    }),
    SyncRunState.COMPLETED: frozenset(),
    SyncRunState.FAILED: frozenset(),
    SyncRunState.CANCELLED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_sync_id() -> str:
    return uuid.uuid4().hex[:12]


def _failure_kind(exc: CrmSyncError) -> FailureKind:
    if isinstance(exc, SyncAlreadyRunningError):
        return FailureKind.ALREADY_RUNNING
    if isinstance(exc, AuthenticationError):
        return FailureKind.AUTHENTICATION
    if isinstance(exc, ProviderUnavailableError):
        return FailureKind.PROVIDER_UNAVAILABLE
    if isinstance(exc, ProviderError):
        return FailureKind.PROVIDER
    if isinstance(exc, PersistenceError):
        return FailureKind.PERSISTENCE
    return FailureKind.CONFIGURATION


# ── Run State ───────────────────────────────────────────────────────────────


@dataclass
class _SyncRun:
    """Mutable bookkeeping for one run."""

    mode: SyncMode
    connection_id: str
    max_reported_errors: int = 25
    sync_id: str = field(default_factory=new_sync_id)
    started_at: datetime = field(default_factory=_utcnow)
    started_clock: float = field(default_factory=time.perf_counter)
    state: SyncRunState = SyncRunState.IDLE
    stats: SyncStats = field(default_factory=SyncStats)
    errors: list[str] = field(default_factory=list)
    failure_kind: FailureKind | None = None
    message: str = ""
    since: datetime | None = None
    connection: Connection | None = None
    cancel_requested: bool = False
    abort_error: CrmSyncError | None = None

    def transition(self, new_state: SyncRunState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid sync state transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def fail(self, kind: FailureKind, message: str) -> None:
        self.failure_kind = kind
        self.message = message
        if not self.state.is_terminal:
            self.transition(SyncRunState.FAILED)

    def add_error(self, message: str) -> None:
        if len(self.errors) < self.max_reported_errors:
            self.errors.append(message)

    @property
    def should_stop(self) -> bool:
        return self.cancel_requested or self.abort_error is not None

    @property
    def duration_ms(self) -> int:
        return int((time.perf_counter() - self.started_clock) * 1000)

    def result(self) -> SyncResult:
        stats = self.stats
        if self.state == SyncRunState.COMPLETED and not self.message:
            self.message = (
                f"Processed {stats.total_processed} record(s): {stats.success_count} succeeded, "
                f"{stats.failed_count} failed, {stats.skipped_count} skipped"
            )
        elif self.state == SyncRunState.CANCELLED and not self.message:
            self.message = f"Sync cancelled after {stats.total_processed} record(s)"
        return SyncResult(
            success=stats.failed_count == 0 and self.state == SyncRunState.COMPLETED,
            state=self.state,
            failure_kind=self.failure_kind,
            message=self.message,
            sync_id=self.sync_id,
            stats=stats.model_copy(),
            errors=list(self.errors),
            duration_ms=self.duration_ms,
        )


@dataclass
class _RunContext:
    run: _SyncRun
    config: ConnectionConfig
    provider: CRMProvider

    @property
    def connection(self) -> Connection:
        return self.config.connection


RunBody = Callable[[_RunContext], Awaitable[None]]


def _inbound_fields(mapping: EntityMapping, provider: CRMProvider) -> list[str]:
    """External fields an inbound read of ``mapping`` needs."""
    fields = [fm.external_field for fm in mapping.active_field_mappings(SyncDirection.INBOUND)]
    for rm in mapping.active_relationship_mappings(SyncDirection.INBOUND):
        fields.extend(provider.lookup_field_candidates(rm.external_lookup_field)[:1])
    identity = identity_fields(mapping)
    if identity is not None:
        fields.append(identity[1])
    return list(dict.fromkeys(fields))


def _merge_snapshot(
    previous: dict[str, Any], current: dict[str, Any], paths: list[str]
) -> dict[str, Any]:
    """Previous snapshot with only ``paths`` refreshed from ``current``.

    Inbound writes refresh just the paths they touched, so a local change
    that has not been sent yet stays visible to the next outbound delta.
    """
    merged = dict(previous)
    for path in paths:
        if path in current:
            merged[path] = current[path]
    return merged


def _remote_changes(values: dict[str, Any], last_synced: dict[str, Any]) -> dict[str, Any]:
    """Inbound values whose CRM side differs from the last-synced snapshot.

    A path the CRM still holds at its last-synced value was not edited there;
    the internal value wins, including a local edit not yet pushed.
    """
    missing = object()
    return {
        path: value
        for path, value in values.items()
        if last_synced.get(path, missing) != to_jsonable_python(value)
    }


# ── Engine ──────────────────────────────────────────────────────────────────


class SyncEngine:
    """Tenant-scoped orchestrator for CRM synchronization.

    Args:
        tenant_id: Tenant whose data is synced.
        store: CRM configuration, ledger and log persistence.
        entities: Internal entity persistence.
        providers: Capability-checked provider registry.
        ledger: Correspondence ledger (shares ``coordinator`` for record locks).
        coordinator: Distributed run locks and cancellation flags.
        progress: Live progress broadcaster.
        max_concurrency: Records processed concurrently within one mapping.
        max_reported_errors: Cap on error messages returned in a SyncResult.
    """

    def __init__(
        self,
        tenant_id: str,
        store: CrmStore,
        entities: InternalEntityStore,
        providers: ProviderRegistry,
        ledger: CorrespondenceLedger,
        coordinator: SyncCoordinator,
        progress: ProgressBroadcaster,
        max_concurrency: int = 8,
        max_reported_errors: int = 25,
    ) -> None:
        self._tenant_id = tenant_id
        self._store = store
        self._entities = entities
        self._providers = providers
        self._ledger = ledger
        self._coordinator = coordinator
        self._progress = progress
        self._config = MappingConfigStore(tenant_id, store, providers)
        self._max_concurrency = max(1, max_concurrency)
        self._max_reported_errors = max_reported_errors
        self._runs: dict[str, _SyncRun] = {}

    # ── Public API ──────────────────────────────────────────────────────────

    async def sync_all(self, connection_id: str) -> SyncResult:
        """Full sync of every enabled entity mapping on a connection."""

        async def body(ctx: _RunContext) -> None:
            await self._sync_mappings(ctx, list(ctx.config.entity_mappings))

        return await self._execute(SyncMode.FULL, connection_id, body)

    async def sync_incremental(self, connection_id: str) -> SyncResult:
        """Sync only external records modified since the connection's watermark.

        Falls back to a full read when the connection has never completed a run.
        """

        async def body(ctx: _RunContext) -> None:
            await self._sync_mappings(ctx, list(ctx.config.entity_mappings))

        return await self._execute(SyncMode.INCREMENTAL, connection_id, body, incremental=True)

    async def sync_entity_mapping(self, entity_mapping_id: str, incremental: bool = False) -> SyncResult:
        """Sync one entity mapping. Does not move the connection's watermark."""
        mode = SyncMode.ENTITY_MAPPING
        try:
            mapping = await self._config.get_entity_mapping(entity_mapping_id)
        except (ConfigurationError, PersistenceError) as exc:
            return self._rejected(mode, _failure_kind(exc), str(exc))

        async def body(ctx: _RunContext) -> None:
            active = ctx.config.get_mapping(entity_mapping_id)
            if active is None:
                raise ConfigurationError(f"Entity mapping {entity_mapping_id} is disabled")
            await self._sync_mappings(ctx, [active])

        return await self._execute(mode, mapping.connection_id, body, incremental=incremental)

    async def sync_relationships(self, entity_mapping_id: str) -> SyncResult:
        """Re-resolve relationship fields for every linked record of one mapping."""
        mode = SyncMode.RELATIONSHIPS
        try:
            mapping = await self._config.get_entity_mapping(entity_mapping_id)
        except (ConfigurationError, PersistenceError) as exc:
            return self._rejected(mode, _failure_kind(exc), str(exc))

        async def body(ctx: _RunContext) -> None:
            active = ctx.config.get_mapping(entity_mapping_id)
            if active is None:
                raise ConfigurationError(f"Entity mapping {entity_mapping_id} is disabled")
            await self._sync_mapping_relationships(ctx, active)

        return await self._execute(mode, mapping.connection_id, body)

    async def sync_outbound_record(
        self, connection_id: str, entity_type: InternalEntityType, entity_id: str
    ) -> SyncResult:
        """Push one internal record through every outbound mapping of its type."""

        async def body(ctx: _RunContext) -> None:
            mappings = [
                m for m in ctx.config.entity_mappings
                if m.internal_entity_type == entity_type
                and (ctx.config.effective_direction(m) or SyncDirection.INBOUND).includes_outbound
            ]
            self._enter_processing(ctx.run)
            for mapping in mappings:
                await self._outbound_record(ctx, mapping, entity_id)
            self._raise_if_aborted(ctx.run)

        return await self._execute(SyncMode.OUTBOUND_RECORD, connection_id, body, exclusive=False)

    async def sync_inbound_record(
        self, connection_id: str, external_entity: str, external_id: str
    ) -> SyncResult:
        """Pull one external record through every inbound mapping of its entity."""

        async def body(ctx: _RunContext) -> None:
            mappings = [
                m for m in ctx.config.entity_mappings
                if m.external_entity == external_entity
                and (ctx.config.effective_direction(m) or SyncDirection.OUTBOUND).includes_inbound
            ]
            ctx.run.transition(SyncRunState.FETCHING)
            started = time.perf_counter()
            record = None
            fetch_error: CrmSyncError | None = None
            if mappings:
                try:
                    record = await ctx.provider.get_record(ctx.connection, external_entity, external_id)
                except CONNECTION_LEVEL_ERRORS:
                    raise
                except RECORD_LEVEL_ERRORS as exc:
                    fetch_error = exc
            ctx.run.transition(SyncRunState.MAPPING)
            ctx.run.transition(SyncRunState.UPSERTING)
            for mapping in mappings:
                if fetch_error is not None:
                    await self._log(ctx, self._failed_entry(
                        ctx, mapping, SyncDirection.INBOUND, fetch_error, started, external_id=external_id,
                    ))
                    continue
                if record is None:
                    await self._log(ctx, self._entry(
                        ctx, mapping, SyncDirection.INBOUND, SyncAction.SKIP, SyncStatus.SKIPPED,
                        external_id=external_id, error="External record not found", started=time.perf_counter(),
                    ))
                    continue
                await self._inbound_record(ctx, mapping, record)
            self._raise_if_aborted(ctx.run)

        return await self._execute(SyncMode.INBOUND_RECORD, connection_id, body, exclusive=False)

    async def handle_webhook_event(
        self, connection_id: str, event_type: str, entity_name: str, record_id: str
    ) -> SyncResult:
        """Apply one webhook notification as an inbound single-record sync.

        Deletion events are acknowledged and skipped; deletes are never propagated.
        """
        log = logger.bind(
            tenant_id=self._tenant_id,
            connection_id=connection_id,
            event_type=event_type,
            entity_name=entity_name,
            record_id=record_id,
        )
        if event_type.lower() in _DELETE_EVENTS:
            log.info("crm_sync.webhook_delete_skipped")
            run = _SyncRun(mode=SyncMode.INBOUND_RECORD, connection_id=connection_id)
            run.state = SyncRunState.COMPLETED
            run.stats.total_processed = 1
            run.stats.skipped_count = 1
            run.message = f"Deletion of {entity_name} {record_id} is not synced"
            return run.result()

        log.info("crm_sync.webhook_event")
        return await self.sync_inbound_record(connection_id, entity_name, record_id)

    async def trigger_outbound(self, entity_type: InternalEntityType, entity_id: str) -> list[SyncResult]:
        """Push a changed internal record to every enabled connection that maps its type."""
        try:
            connections = await self._store.list_connections(self._tenant_id, enabled_only=True)
        except PersistenceError as exc:
            logger.error("crm_sync.trigger_failed", tenant_id=self._tenant_id, error=str(exc))
            return [self._rejected(SyncMode.OUTBOUND_RECORD, FailureKind.PERSISTENCE, str(exc))]

        results = []
        for connection in connections:
            if not connection.sync_direction.includes_outbound:
                continue
            mappings = await self._store.list_entity_mappings(self._tenant_id, connection.id)
            if not any(
                m.is_enabled and m.internal_entity_type == entity_type and m.sync_direction.includes_outbound
                for m in mappings
            ):
                continue
            results.append(await self.sync_outbound_record(connection.id, entity_type, entity_id))
        return results

    async def cancel(self, sync_id: str) -> bool:
        """Request cancellation of a run in this or any other worker.

        Records already in flight finish; no new record starts afterwards.

        Returns:
            True if the run is active here or its progress shows it still running.
        """
        run = self._runs.get(sync_id)
        if run is not None:
            run.cancel_requested = True
        await self._coordinator.request_cancel(sync_id)
        if run is not None:
            return True
        progress = await self._progress.get_progress(sync_id)
        return progress is not None and progress.status == ProgressStatus.IN_PROGRESS

    def active_sync_ids(self) -> list[str]:
        return list(self._runs)

    # ── Run Lifecycle ───────────────────────────────────────────────────────

    def _rejected(self, mode: SyncMode, kind: FailureKind, message: str) -> SyncResult:
        """Result for a call that failed before a run could start."""
        run = _SyncRun(mode=mode, connection_id="", max_reported_errors=self._max_reported_errors)
        run.fail(kind, message)
        logger.warning(
            "crm_sync.run_rejected",
            tenant_id=self._tenant_id,
            sync_id=run.sync_id,
            mode=mode.value,
            failure_kind=kind.value,
            error=message,
        )
        record_sync_run(mode.value, run.state.value, 0.0)
        return run.result()

    async def _execute(
        self,
        mode: SyncMode,
        connection_id: str,
        body: RunBody,
        incremental: bool = False,
        exclusive: bool = True,
    ) -> SyncResult:
        run = _SyncRun(mode=mode, connection_id=connection_id, max_reported_errors=self._max_reported_errors)
        log = logger.bind(
            tenant_id=self._tenant_id,
            connection_id=connection_id,
            sync_id=run.sync_id,
            mode=mode.value,
        )
        self._runs[run.sync_id] = run
        crm_sync_runs_in_progress.inc()
        log.info("crm_sync.run_started")
        try:
            try:
                lock = self._coordinator.connection_lock(connection_id) if exclusive else nullcontext()
                async with lock:
                    await self._run(run, body, incremental)
            except CONNECTION_LEVEL_ERRORS as exc:
                run.fail(_failure_kind(exc), str(exc))
                log.warning("crm_sync.run_failed", failure_kind=run.failure_kind.value, error=str(exc))
            except ProviderError as exc:
                run.fail(FailureKind.PROVIDER, str(exc))
                log.warning("crm_sync.run_failed", failure_kind=FailureKind.PROVIDER.value, error=str(exc))
            except PersistenceError as exc:
                run.fail(FailureKind.PERSISTENCE, str(exc))
                log.error("crm_sync.run_failed", failure_kind=FailureKind.PERSISTENCE.value, error=str(exc))
            except Exception as exc:
                log.exception("crm_sync.run_crashed")
                run.fail(FailureKind.INTERNAL, f"Unexpected error: {exc.__class__.__name__}: {exc}")
            await self._record_attempt(run, log)
        finally:
            self._runs.pop(run.sync_id, None)
            crm_sync_runs_in_progress.dec()

        result = run.result()
        record_sync_run(mode.value, run.state.value, result.duration_ms / 1000)
        log.info(
            "crm_sync.run_finished",
            state=run.state.value,
            processed=run.stats.total_processed,
            succeeded=run.stats.success_count,
            failed=run.stats.failed_count,
            skipped=run.stats.skipped_count,
            duration_ms=result.duration_ms,
        )
        return result

    async def _run(self, run: _SyncRun, body: RunBody, incremental: bool) -> None:
        run.transition(SyncRunState.AUTHENTICATING)
        config = await self._config.load_connection_config(run.connection_id)
        run.connection = config.connection
        provider = self._providers.get_provider(config.connection.provider)
        if not await provider.validate_connection(config.connection):
            raise AuthenticationError(
                f"{config.connection.provider.value} rejected the credentials of connection "
                f"{config.connection.id}"
            )
        if incremental:
            run.since = config.connection.last_successful_sync_at

        await body(_RunContext(run=run, config=config, provider=provider))
        run.transition(SyncRunState.CANCELLED if run.cancel_requested else SyncRunState.COMPLETED)

    async def _record_attempt(self, run: _SyncRun, log: Any) -> None:
        """Persist the attempt on the connection and advance the watermark if earned."""
        if run.connection is None or run.failure_kind == FailureKind.ALREADY_RUNNING:
            return

        finished_at = _utcnow()
        advances = run.mode in (SyncMode.FULL, SyncMode.INCREMENTAL) and run.state == SyncRunState.COMPLETED
        watermark = run.started_at if advances else None
        if run.state == SyncRunState.FAILED:
            error = run.message
        else:
            error = "; ".join(run.errors[:3]) or None

        try:
            await self._store.update_connection_sync_state(
                self._tenant_id,
                run.connection_id,
                last_sync_at=finished_at,
                last_sync_error=error,
                last_successful_sync_at=watermark,
            )
        except PersistenceError as exc:
            log.error("crm_sync.state_update_failed", error=str(exc))
            return

        run.stats.last_sync_at = finished_at
        run.stats.last_successful_sync_at = watermark or run.connection.last_successful_sync_at

    @staticmethod
    def _enter_processing(run: _SyncRun) -> None:
        run.transition(SyncRunState.FETCHING)
        run.transition(SyncRunState.MAPPING)
        run.transition(SyncRunState.UPSERTING)

    @staticmethod
    def _raise_if_aborted(run: _SyncRun) -> None:
        if run.abort_error is not None:
            raise run.abort_error

    async def _check_cancelled(self, run: _SyncRun) -> bool:
        if not run.cancel_requested and await self._coordinator.is_cancel_requested(run.sync_id):
            run.cancel_requested = True
            logger.info("crm_sync.cancel_observed", tenant_id=self._tenant_id, sync_id=run.sync_id)
        return run.should_stop

    # ── Mapping Phases ──────────────────────────────────────────────────────

    async def _sync_mappings(self, ctx: _RunContext, mappings: list[EntityMapping]) -> None:
        for mapping in mappings:
            if await self._check_cancelled(ctx.run):
                break
            await self._sync_mapping(ctx, mapping)

    async def _sync_mapping(self, ctx: _RunContext, mapping: EntityMapping) -> None:
        """Fetch, map and upsert every record of one entity mapping."""
        run = ctx.run
        direction = ctx.config.effective_direction(mapping)
        if direction is None:
            return

        run.transition(SyncRunState.FETCHING)
        internal_ids: list[str] = []
        if direction.includes_outbound:
            entities = await self._entities.list_entities(self._tenant_id, mapping.internal_entity_type)
            internal_ids = [e.id for e in entities]

        records: list[ExternalRecord] = []
        if direction.includes_inbound:
            records = await self._read_external(ctx, mapping)

        run.transition(SyncRunState.MAPPING)
        if run.since is not None:
            fetched = len(records)
            records = [r for r in records if r.modified_on is None or r.modified_on >= run.since]
            if len(records) != fetched:
                logger.debug(
                    "crm_sync.stale_records_dropped",
                    sync_id=run.sync_id,
                    entity=mapping.external_entity,
                    dropped=fetched - len(records),
                )

        progress = await self._progress.start(
            run.sync_id,
            ctx.connection.id,
            mapping.id,
            mapping.external_entity,
            len(internal_ids) + len(records),
        )
        run.transition(SyncRunState.UPSERTING)

        # Inbound first: identity matches get linked before outbound would create
        # them, and CRM-side edits land before the outbound delta is computed
        await self._run_bounded(ctx, [
            lambda record=record: self._inbound_record(ctx, mapping, record, progress)
            for record in records
        ])
        await self._run_bounded(ctx, [
            lambda entity_id=entity_id: self._outbound_record(ctx, mapping, entity_id, progress)
            for entity_id in internal_ids
        ])

        if run.abort_error is not None:
            await self._progress.complete(progress, ProgressStatus.FAILED, str(run.abort_error))
            raise run.abort_error
        if run.cancel_requested:
            await self._progress.complete(progress, ProgressStatus.CANCELLED, "Sync cancelled")
            return
        await self._progress.complete(progress)

    async def _read_external(self, ctx: _RunContext, mapping: EntityMapping) -> list[ExternalRecord]:
        """Read the mapping's external records.

        A rejected read (bad filter, 4xx/5xx) is logged against the mapping and
        re-raised, failing the run so the watermark does not skip the records.
        """
        started = time.perf_counter()
        try:
            return [
                record
                async for record in ctx.provider.read_changed(
                    ctx.connection,
                    mapping.external_entity,
                    since=ctx.run.since,
                    filter_expression=mapping.filter_expression,
                    fields=_inbound_fields(mapping, ctx.provider),
                )
            ]
        except CONNECTION_LEVEL_ERRORS:
            raise
        except ProviderError as exc:
            await self._log(ctx, self._failed_entry(ctx, mapping, SyncDirection.INBOUND, exc, started))
            raise

    async def _run_bounded(self, ctx: _RunContext, jobs: list[Callable[[], Awaitable[None]]]) -> None:
        """Run record jobs with bounded concurrency until done, cancelled or aborted."""
        semaphore = asyncio.Semaphore(self._max_concurrency)
        run = ctx.run

        async def guarded(job: Callable[[], Awaitable[None]]) -> None:
            async with semaphore:
                if await self._check_cancelled(run):
                    return
                try:
                    await job()
                except CONNECTION_LEVEL_ERRORS as exc:
                    if run.abort_error is None:
                        run.abort_error = exc
                        logger.warning(
                            "crm_sync.run_aborting",
                            tenant_id=self._tenant_id,
                            sync_id=run.sync_id,
                            error=str(exc),
                        )

        await asyncio.gather(*(guarded(job) for job in jobs))

    async def _sync_mapping_relationships(self, ctx: _RunContext, mapping: EntityMapping) -> None:
        run = ctx.run
        run.transition(SyncRunState.FETCHING)
        links = [
            link for link in await self._ledger.list_links(ctx.connection.id, mapping.internal_entity_type)
            if link.external_entity == mapping.external_entity
        ]
        run.transition(SyncRunState.MAPPING)
        progress = await self._progress.start(
            run.sync_id, ctx.connection.id, mapping.id, mapping.external_entity, len(links)
        )
        run.transition(SyncRunState.UPSERTING)
        jobs: list[Callable[[], Awaitable[None]]] = [
            lambda link=link: self._relationship_record(ctx, mapping, link, progress) for link in links
        ]
        await self._run_bounded(ctx, jobs)

        if run.abort_error is not None:
            await self._progress.complete(progress, ProgressStatus.FAILED, str(run.abort_error))
            raise run.abort_error
        await self._progress.complete(
            progress, ProgressStatus.CANCELLED if run.cancel_requested else ProgressStatus.COMPLETED
        )

    # ── Record Logging ──────────────────────────────────────────────────────

    def _entry(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        direction: SyncDirection,
        action: SyncAction,
        status: SyncStatus,
        *,
        started: float,
        internal_id: str | None = None,
        external_id: str | None = None,
        changed_fields: list[str] | None = None,
        error: str | None = None,
    ) -> SyncLogEntry:
        return SyncLogEntry(
            connection_id=ctx.connection.id,
            entity_mapping_id=mapping.id,
            sync_id=ctx.run.sync_id,
            internal_type=mapping.internal_entity_type,
            internal_id=internal_id,
            external_entity=mapping.external_entity,
            external_id=external_id,
            direction=direction,
            action=action,
            status=status,
            changed_fields=changed_fields or [],
            error_message=error,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    async def _log(
        self, ctx: _RunContext, entry: SyncLogEntry, progress: SyncProgress | None = None
    ) -> None:
        """Write the audit row and fold the outcome into run stats and progress."""
        tally_sync_log(ctx.run.stats, entry)
        if entry.status == SyncStatus.FAILED:
            record_ref = entry.internal_id or entry.external_id or "?"
            ctx.run.add_error(f"{entry.external_entity} {record_ref}: {entry.error_message}")
        record_sync_outcome(entry.direction.value, entry.action.value, entry.status.value)

        try:
            await self._store.append_sync_log(self._tenant_id, entry)
        except PersistenceError as exc:
            logger.error(
                "crm_sync.log_write_failed",
                tenant_id=self._tenant_id,
                sync_id=entry.sync_id,
                error=str(exc),
            )

        if progress is not None:
            if entry.status == SyncStatus.FAILED:
                await self._progress.record_failure(progress, entry.error_message or "")
            else:
                await self._progress.record_success(progress)

    def _failed_entry(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        direction: SyncDirection,
        exc: CrmSyncError,
        started: float,
        *,
        internal_id: str | None = None,
        external_id: str | None = None,
    ) -> SyncLogEntry:
        logger.warning(
            "crm_sync.record_failed",
            tenant_id=self._tenant_id,
            sync_id=ctx.run.sync_id,
            entity=mapping.external_entity,
            internal_id=internal_id,
            external_id=external_id,
            error=str(exc),
        )
        return self._entry(
            ctx, mapping, direction, SyncAction.SKIP, SyncStatus.FAILED,
            started=started, internal_id=internal_id, external_id=external_id, error=str(exc),
        )

    async def _guard_record(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        direction: SyncDirection,
        work: Awaitable[SyncLogEntry],
        progress: SyncProgress | None,
        *,
        internal_id: str | None = None,
        external_id: str | None = None,
    ) -> None:
        """Await one record's work and log its outcome; only connection-level errors escape."""
        started = time.perf_counter()
        try:
            entry = await work
        except CONNECTION_LEVEL_ERRORS:
            raise
        except RECORD_LEVEL_ERRORS as exc:
            entry = self._failed_entry(
                ctx, mapping, direction, exc, started, internal_id=internal_id, external_id=external_id
            )
        except Exception as exc:
            logger.exception(
                "crm_sync.record_crashed",
                tenant_id=self._tenant_id,
                sync_id=ctx.run.sync_id,
                entity=mapping.external_entity,
                internal_id=internal_id,
                external_id=external_id,
            )
            entry = self._entry(
                ctx, mapping, direction, SyncAction.SKIP, SyncStatus.FAILED,
                started=started, internal_id=internal_id, external_id=external_id,
                error=f"Unexpected error: {exc.__class__.__name__}: {exc}",
            )
        await self._log(ctx, entry, progress)

    # ── Outbound ────────────────────────────────────────────────────────────

    async def _outbound_record(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        entity_id: str,
        progress: SyncProgress | None = None,
    ) -> None:
        visited = {(mapping.internal_entity_type.value, entity_id)}
        await self._guard_record(
            ctx, mapping, SyncDirection.OUTBOUND,
            self._push_entity(ctx, mapping, entity_id, visited),
            progress, internal_id=entity_id,
        )

    async def _push_entity(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        entity_id: str,
        visited: set[tuple[str, str]],
    ) -> SyncLogEntry:
        """Create or update the external counterpart of one internal record."""
        started = time.perf_counter()
        entity_type = mapping.internal_entity_type
        conn = ctx.connection

        async with self._ledger.internal_lock(conn.id, entity_type, entity_id):
            entity = await self._entities.get_entity(self._tenant_id, entity_type, entity_id)
            if entity is None:
                return self._entry(
                    ctx, mapping, SyncDirection.OUTBOUND, SyncAction.SKIP, SyncStatus.SKIPPED,
                    started=started, internal_id=entity_id, error="Internal record not found",
                )

            link = await self._ledger.resolve_external(conn.id, entity_type, entity_id)
            snapshot = snapshot_outbound(entity, mapping)
            warnings: list[str] = []

            if link is None:
                payload = build_outbound_payload(entity, mapping, warnings=warnings)
                payload.update(await self._outbound_relationships(ctx, mapping, entity, visited))
                match = await self._find_external_match(ctx, mapping, entity)
                if match is not None:
                    await ctx.provider.upsert(conn, mapping.external_entity, match.id, payload)
                    await self._ledger.link(
                        conn.id, entity_type, entity_id, mapping.external_entity,
                        match.id, SyncDirection.OUTBOUND, snapshot,
                    )
                    ctx.run.stats.linked_by_match_count += 1
                    logger.info(
                        "crm_sync.linked_by_identity",
                        sync_id=ctx.run.sync_id,
                        internal_id=entity_id,
                        external_id=match.id,
                        direction=SyncDirection.OUTBOUND.value,
                    )
                    return self._entry(
                        ctx, mapping, SyncDirection.OUTBOUND, SyncAction.UPDATE, SyncStatus.SUCCESS,
                        started=started, internal_id=entity_id, external_id=match.id,
                        changed_fields=list(payload), error="; ".join(warnings) or None,
                    )

                result = await ctx.provider.upsert(conn, mapping.external_entity, None, payload)
                await self._ledger.link(
                    conn.id, entity_type, entity_id, mapping.external_entity,
                    result.external_id, SyncDirection.OUTBOUND, snapshot,
                )
                return self._entry(
                    ctx, mapping, SyncDirection.OUTBOUND, SyncAction.CREATE, SyncStatus.SUCCESS,
                    started=started, internal_id=entity_id, external_id=result.external_id,
                    changed_fields=list(payload), error="; ".join(warnings) or None,
                )

            delta = changed_paths(snapshot, link.last_synced_fields)
            if not delta:
                return self._entry(
                    ctx, mapping, SyncDirection.OUTBOUND, SyncAction.SKIP, SyncStatus.SKIPPED,
                    started=started, internal_id=entity_id, external_id=link.external_id,
                )

            payload = build_outbound_payload(entity, mapping, paths=delta, warnings=warnings)
            payload.update(await self._outbound_relationships(ctx, mapping, entity, visited, paths=delta))
            if payload:
                await ctx.provider.upsert(conn, mapping.external_entity, link.external_id, payload)
            await self._ledger.link(
                conn.id, entity_type, entity_id, mapping.external_entity,
                link.external_id, SyncDirection.OUTBOUND, snapshot,
            )
            if not payload:
                return self._entry(
                    ctx, mapping, SyncDirection.OUTBOUND, SyncAction.SKIP, SyncStatus.SKIPPED,
                    started=started, internal_id=entity_id, external_id=link.external_id,
                )
            return self._entry(
                ctx, mapping, SyncDirection.OUTBOUND, SyncAction.UPDATE, SyncStatus.SUCCESS,
                started=started, internal_id=entity_id, external_id=link.external_id,
                changed_fields=delta, error="; ".join(warnings) or None,
            )

    async def _outbound_relationships(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        entity: InternalEntity,
        visited: set[tuple[str, str]],
        paths: list[str] | None = None,
    ) -> dict[str, Any]:
        """Lookup field values for an outbound payload, resolved through the ledger.

        A reference that cannot be resolved is left out of the payload rather
        than clearing the CRM's lookup.
        """
        conn = ctx.connection
        payload: dict[str, Any] = {}
        for rm in mapping.active_relationship_mappings(SyncDirection.OUTBOUND):
            if paths is not None and rm.internal_field not in paths:
                continue
            related_id = get_value(entity, mapping.internal_entity_type, rm.internal_field)
            if not related_id:
                if rm.sync_null_values:
                    payload[rm.external_lookup_field] = None
                continue

            related_id = str(related_id)
            external_id = None
            link = await self._ledger.resolve_external(conn.id, rm.related_entity_type, related_id)
            if link is not None:
                external_id = link.external_id
            elif rm.auto_create_related:
                external_id = await self._create_related_outbound(ctx, rm, related_id, visited)

            if external_id is None:
                logger.debug(
                    "crm_sync.relationship_unresolved",
                    sync_id=ctx.run.sync_id,
                    field=rm.internal_field,
                    related_id=related_id,
                )
                continue
            payload[rm.external_lookup_field] = ctx.provider.format_lookup_value(
                rm.external_lookup_field, rm.external_related_entity, external_id
            )
        return payload

    async def _create_related_outbound(
        self,
        ctx: _RunContext,
        rm: RelationshipMapping,
        related_id: str,
        visited: set[tuple[str, str]],
    ) -> str | None:
        """Create and link the external counterpart of a referenced internal record."""
        key = (rm.related_entity_type.value, related_id)
        if key in visited:
            return None
        visited.add(key)

        related_mapping = ctx.config.find_mapping(rm.related_entity_type, rm.external_related_entity)
        direction = ctx.config.effective_direction(related_mapping) if related_mapping else None
        if related_mapping is None or direction is None or not direction.includes_outbound:
            logger.warning(
                "crm_sync.related_mapping_missing",
                sync_id=ctx.run.sync_id,
                related_type=rm.related_entity_type.value,
                external_entity=rm.external_related_entity,
            )
            return None

        entry = await self._push_entity(ctx, related_mapping, related_id, visited)
        await self._log(ctx, entry)
        return entry.external_id if entry.status == SyncStatus.SUCCESS else None

    async def _find_external_match(
        self, ctx: _RunContext, mapping: EntityMapping, entity: InternalEntity
    ) -> ExternalRecord | None:
        """Unlinked CRM record sharing the internal record's identity key, if any."""
        identity = identity_fields(mapping)
        if identity is None:
            return None
        internal_path, external_field = identity
        raw = get_value(entity, mapping.internal_entity_type, internal_path)
        key = normalize_identity(raw)
        if key is None:
            return None

        candidates = await ctx.provider.find_by_field(
            ctx.connection, mapping.external_entity, external_field, str(raw).strip()
        )
        for record in candidates:
            if normalize_identity(record.fields.get(external_field)) != key:
                continue
            existing = await self._ledger.resolve_internal(ctx.connection.id, mapping.external_entity, record.id)
            if existing is None:
                return record
        return None

    # ── Inbound ─────────────────────────────────────────────────────────────

    async def _inbound_record(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        record: ExternalRecord,
        progress: SyncProgress | None = None,
    ) -> None:
        visited = {(mapping.external_entity, record.id)}
        await self._guard_record(
            ctx, mapping, SyncDirection.INBOUND,
            self._pull_record(ctx, mapping, record, visited),
            progress, external_id=record.id,
        )

    async def _pull_record(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        record: ExternalRecord,
        visited: set[tuple[str, str]],
    ) -> SyncLogEntry:
        """Create, update or link the internal counterpart of one external record."""
        started = time.perf_counter()
        entity_type = mapping.internal_entity_type
        conn = ctx.connection

        async with self._ledger.external_lock(conn.id, mapping.external_entity, record.id):
            link = await self._ledger.resolve_internal(conn.id, mapping.external_entity, record.id)
            warnings: list[str] = []
            values = read_inbound_values(record, mapping, warnings)
            values.update(await self._inbound_relationships(ctx, mapping, record, visited))
            warning_text = "; ".join(warnings) or None

            if link is not None:
                async with self._ledger.internal_lock(conn.id, entity_type, link.internal_id):
                    return await self._update_linked(ctx, mapping, record, link, values, warning_text, started)

            matched = await self._link_by_identity(ctx, mapping, record, values)
            if matched is not None:
                entity, changed = matched
                ctx.run.stats.linked_by_match_count += 1
                return self._entry(
                    ctx, mapping, SyncDirection.INBOUND, SyncAction.UPDATE, SyncStatus.SUCCESS,
                    started=started, internal_id=entity.id, external_id=record.id,
                    changed_fields=changed, error=warning_text,
                )

            entity = new_entity(entity_type)
            apply_inbound_values(entity, entity_type, values)
            entity.id = await self._entities.create_entity(self._tenant_id, entity_type, entity)
            await self._ledger.link(
                conn.id, entity_type, entity.id, mapping.external_entity, record.id,
                SyncDirection.INBOUND, snapshot_outbound(entity, mapping),
            )
            return self._entry(
                ctx, mapping, SyncDirection.INBOUND, SyncAction.CREATE, SyncStatus.SUCCESS,
                started=started, internal_id=entity.id, external_id=record.id,
                changed_fields=list(values), error=warning_text,
            )

    async def _update_linked(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        record: ExternalRecord,
        link: CorrespondenceRecord,
        values: dict[str, Any],
        warning_text: str | None,
        started: float,
    ) -> SyncLogEntry:
        entity_type = mapping.internal_entity_type
        # Re-read under the internal lock; an outbound push may have just updated the row
        link = await self._ledger.resolve_internal(ctx.connection.id, mapping.external_entity, record.id) or link
        entity = await self._entities.get_entity(self._tenant_id, entity_type, link.internal_id)
        if entity is None:
            return self._entry(
                ctx, mapping, SyncDirection.INBOUND, SyncAction.SKIP, SyncStatus.SKIPPED,
                started=started, internal_id=link.internal_id, external_id=record.id,
                error="Linked internal record no longer exists",
            )
        direction = ctx.config.effective_direction(mapping)
        if direction is not None and direction.includes_outbound:
            # Local edits are pushed on this mapping; keep them unless the CRM moved too
            values = _remote_changes(values, link.last_synced_fields)
        changed = apply_inbound_values(entity, entity_type, values)
        if not changed:
            return self._entry(
                ctx, mapping, SyncDirection.INBOUND, SyncAction.SKIP, SyncStatus.SKIPPED,
                started=started, internal_id=entity.id, external_id=record.id,
            )
        await self._entities.save_entity(self._tenant_id, entity_type, entity)
        await self._ledger.link(
            ctx.connection.id, entity_type, entity.id, mapping.external_entity, record.id,
            SyncDirection.INBOUND,
            _merge_snapshot(link.last_synced_fields, snapshot_outbound(entity, mapping), changed),
        )
        return self._entry(
            ctx, mapping, SyncDirection.INBOUND, SyncAction.UPDATE, SyncStatus.SUCCESS,
            started=started, internal_id=entity.id, external_id=record.id,
            changed_fields=changed, error=warning_text,
        )

    async def _link_by_identity(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        record: ExternalRecord,
        values: dict[str, Any],
    ) -> tuple[InternalEntity, list[str]] | None:
        """Adopt an unlinked internal record sharing the external record's identity key.

        Returns:
            The matched entity and the paths updated on it, or None if no
            unlinked internal record matches.
        """
        identity = identity_fields(mapping)
        if identity is None:
            return None
        internal_path, external_field = identity
        key = normalize_identity(record.fields.get(external_field))
        if key is None:
            return None

        entity_type = mapping.internal_entity_type
        conn = ctx.connection
        candidates = await self._entities.find_by_field(self._tenant_id, entity_type, internal_path, key)
        for candidate in candidates:
            async with self._ledger.internal_lock(conn.id, entity_type, candidate.id):
                if await self._ledger.resolve_external(conn.id, entity_type, candidate.id) is not None:
                    continue
                changed = apply_inbound_values(candidate, entity_type, values)
                if changed:
                    await self._entities.save_entity(self._tenant_id, entity_type, candidate)
                current = snapshot_outbound(candidate, mapping)
                await self._ledger.link(
                    conn.id, entity_type, candidate.id, mapping.external_entity, record.id,
                    SyncDirection.INBOUND, _merge_snapshot({}, current, list(values)),
                )
                logger.info(
                    "crm_sync.linked_by_identity",
                    sync_id=ctx.run.sync_id,
                    internal_id=candidate.id,
                    external_id=record.id,
                    identity_field=internal_path,
                )
                return candidate, changed
        return None

    async def _inbound_relationships(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        record: ExternalRecord,
        visited: set[tuple[str, str]],
    ) -> dict[str, Any]:
        """Internal reference values for an external record's lookup fields."""
        conn = ctx.connection
        values: dict[str, Any] = {}
        for rm in mapping.active_relationship_mappings(SyncDirection.INBOUND):
            present = False
            external_ref = None
            for name in ctx.provider.lookup_field_candidates(rm.external_lookup_field):
                if name in record.fields:
                    present = True
                    external_ref = record.fields[name]
                    break
            if not present:
                continue
            if external_ref in (None, ""):
                if rm.sync_null_values:
                    values[rm.internal_field] = None
                continue

            external_ref = str(external_ref)
            link = await self._ledger.resolve_internal(conn.id, rm.external_related_entity, external_ref)
            if link is not None:
                values[rm.internal_field] = link.internal_id
                continue
            if rm.auto_create_related:
                internal_id = await self._create_related_inbound(ctx, rm, external_ref, visited)
                if internal_id is not None:
                    values[rm.internal_field] = internal_id
        return values

    async def _create_related_inbound(
        self,
        ctx: _RunContext,
        rm: RelationshipMapping,
        external_ref: str,
        visited: set[tuple[str, str]],
    ) -> str | None:
        """Fetch, create and link the internal counterpart of a referenced external record."""
        key = (rm.external_related_entity, external_ref)
        if key in visited:
            return None
        visited.add(key)

        related_mapping = ctx.config.find_mapping(rm.related_entity_type, rm.external_related_entity)
        direction = ctx.config.effective_direction(related_mapping) if related_mapping else None
        if related_mapping is None or direction is None or not direction.includes_inbound:
            logger.warning(
                "crm_sync.related_mapping_missing",
                sync_id=ctx.run.sync_id,
                related_type=rm.related_entity_type.value,
                external_entity=rm.external_related_entity,
            )
            return None

        record = await ctx.provider.get_record(ctx.connection, rm.external_related_entity, external_ref)
        if record is None:
            logger.warning(
                "crm_sync.related_record_missing",
                sync_id=ctx.run.sync_id,
                external_entity=rm.external_related_entity,
                external_id=external_ref,
            )
            return None

        entry = await self._pull_record(ctx, related_mapping, record, visited)
        await self._log(ctx, entry)
        return entry.internal_id if entry.status == SyncStatus.SUCCESS else None

    # ── Relationships Only ──────────────────────────────────────────────────

    async def _relationship_record(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        link: CorrespondenceRecord,
        progress: SyncProgress,
    ) -> None:
        await self._guard_record(
            ctx, mapping, ctx.config.effective_direction(mapping) or mapping.sync_direction,
            self._resolve_record_relationships(ctx, mapping, link),
            progress, internal_id=link.internal_id, external_id=link.external_id,
        )

    async def _resolve_record_relationships(
        self,
        ctx: _RunContext,
        mapping: EntityMapping,
        link: CorrespondenceRecord,
    ) -> SyncLogEntry:
        """Re-send or re-read only the relationship fields of one linked pair."""
        started = time.perf_counter()
        entity_type = mapping.internal_entity_type
        conn = ctx.connection
        direction = ctx.config.effective_direction(mapping) or mapping.sync_direction
        visited = {(entity_type.value, link.internal_id), (mapping.external_entity, link.external_id)}

        async with self._ledger.internal_lock(conn.id, entity_type, link.internal_id):
            entity = await self._entities.get_entity(self._tenant_id, entity_type, link.internal_id)
            if entity is None:
                return self._entry(
                    ctx, mapping, direction, SyncAction.SKIP, SyncStatus.SKIPPED,
                    started=started, internal_id=link.internal_id, external_id=link.external_id,
                    error="Linked internal record no longer exists",
                )

            changed: list[str] = []
            if direction.includes_outbound and mapping.active_relationship_mappings(SyncDirection.OUTBOUND):
                payload = await self._outbound_relationships(ctx, mapping, entity, visited)
                if payload:
                    await ctx.provider.upsert(conn, mapping.external_entity, link.external_id, payload)
                    changed.extend(
                        rm.internal_field
                        for rm in mapping.active_relationship_mappings(SyncDirection.OUTBOUND)
                        if rm.external_lookup_field in payload
                    )

            if direction.includes_inbound and mapping.active_relationship_mappings(SyncDirection.INBOUND):
                record = await ctx.provider.get_record(conn, mapping.external_entity, link.external_id)
                if record is not None:
                    values = await self._inbound_relationships(ctx, mapping, record, visited)
                    applied = apply_inbound_values(entity, entity_type, values)
                    if applied:
                        await self._entities.save_entity(self._tenant_id, entity_type, entity)
                        changed.extend(path for path in applied if path not in changed)

            if not changed:
                return self._entry(
                    ctx, mapping, direction, SyncAction.SKIP, SyncStatus.SKIPPED,
                    started=started, internal_id=link.internal_id, external_id=link.external_id,
                )

            await self._ledger.link(
                conn.id, entity_type, link.internal_id, mapping.external_entity, link.external_id,
                direction,
                _merge_snapshot(link.last_synced_fields, snapshot_outbound(entity, mapping), changed),
            )
            return self._entry(
                ctx, mapping, direction, SyncAction.UPDATE, SyncStatus.SUCCESS,
                started=started, internal_id=link.internal_id, external_id=link.external_id,
                changed_fields=changed,
            )
