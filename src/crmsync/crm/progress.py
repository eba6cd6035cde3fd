"""Live sync progress over Redis pub/sub, with TTL-bound snapshots.

Every update is published to three tenant-scoped channels so a subscriber
can follow one run, one entity mapping, or everything on a connection:

    t:{tenant_id}:crm:progress:sync:{sync_id}
    t:{tenant_id}:crm:progress:entity_mapping:{entity_mapping_id}
    t:{tenant_id}:crm:progress:connection:{connection_id}

The latest snapshot per run is also stored under
``t:{tenant_id}:crm:progress:state:{sync_id}`` with a TTL, so progress never
accumulates in memory and late subscribers can read the current state.

Broadcasting is best-effort: a Redis failure is logged and never fails the
sync run it describes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timezone

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from src.crmsync.core.redis import tenant_key
from src.crmsync.crm.schemas import ProgressScope, ProgressStatus, SyncProgress

logger = structlog.get_logger(__name__)


class ProgressBroadcaster:
    """Publish and read sync progress for one tenant.

    Args:
        redis: Raw async Redis client.
        tenant_id: Tenant identifier for key scoping.
        ttl_seconds: Lifetime of stored progress snapshots.
    """

    def __init__(self, redis: aioredis.Redis, tenant_id: str, ttl_seconds: int = 3600) -> None:
        self._redis = redis
        self._tenant_id = tenant_id
        self._ttl = ttl_seconds

    # ── Keys ────────────────────────────────────────────────────────────────

    def channel(self, scope: ProgressScope, key: str) -> str:
        return tenant_key(self._tenant_id, "crm", "progress", scope.value, key)

    def _state_key(self, sync_id: str) -> str:
        return tenant_key(self._tenant_id, "crm", "progress", "state", sync_id)

    # ── Publishing ──────────────────────────────────────────────────────────

    async def _publish(self, progress: SyncProgress) -> None:
        progress.updated_at = datetime.now(timezone.utc)
        if progress.total_records > 0:
            progress.percent_complete = min(
                100, int(progress.current_record * 100 / progress.total_records)
            )
        payload = progress.model_dump_json()

        channels = [self.channel(ProgressScope.SYNC, progress.sync_id)]
        if progress.entity_mapping_id:
            channels.append(self.channel(ProgressScope.ENTITY_MAPPING, progress.entity_mapping_id))
        channels.append(self.channel(ProgressScope.CONNECTION, progress.connection_id))

        try:
            await self._redis.set(self._state_key(progress.sync_id), payload, ex=self._ttl)
            for channel in channels:
                await self._redis.publish(channel, payload)
        except (RedisError, OSError) as exc:
            logger.warning(
                "crm_progress.publish_failed",
                sync_id=progress.sync_id,
                error=str(exc),
            )

    async def start(
        self,
        sync_id: str,
        connection_id: str,
        entity_mapping_id: str | None,
        entity_name: str,
        total_records: int,
    ) -> SyncProgress:
        """Begin a progress phase for one entity mapping of a run."""
        progress = SyncProgress(
            sync_id=sync_id,
            connection_id=connection_id,
            entity_mapping_id=entity_mapping_id,
            entity_name=entity_name,
            total_records=total_records,
            message=f"Syncing {total_records} {entity_name} record(s)",
        )
        await self._publish(progress)
        return progress

    async def report(self, progress: SyncProgress, message: str | None = None) -> None:
        if message is not None:
            progress.message = message
        await self._publish(progress)

    async def record_success(self, progress: SyncProgress) -> None:
        progress.current_record += 1
        progress.success_count += 1
        await self._publish(progress)

    async def record_failure(self, progress: SyncProgress, error: str) -> None:
        progress.current_record += 1
        progress.failed_count += 1
        progress.error_message = error
        await self._publish(progress)

    async def complete(
        self,
        progress: SyncProgress,
        status: ProgressStatus = ProgressStatus.COMPLETED,
        message: str | None = None,
    ) -> None:
        """Publish the terminal update for a phase."""
        progress.status = status
        if status == ProgressStatus.COMPLETED:
            progress.current_record = progress.total_records
            progress.percent_complete = 100
        progress.message = message or (
            f"{progress.success_count} succeeded, {progress.failed_count} failed"
        )
        await self._publish(progress)

    # ── Reading ─────────────────────────────────────────────────────────────

    async def get_progress(self, sync_id: str) -> SyncProgress | None:
        """Latest stored snapshot for a run, or None if unknown or expired."""
        raw = await self._redis.get(self._state_key(sync_id))
        if raw is None:
            return None
        try:
            return SyncProgress.model_validate_json(raw)
        except ValidationError:
            logger.warning("crm_progress.invalid_snapshot", sync_id=sync_id)
            return None

    async def subscribe(self, scope: ProgressScope, key: str) -> AsyncIterator[SyncProgress]:
        """Yield progress updates published to one scope until the caller stops."""
        pubsub = self._redis.pubsub()
        channel = self.channel(scope, key)
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield SyncProgress.model_validate_json(message["data"])
                except ValidationError:
                    logger.warning("crm_progress.invalid_message", channel=channel)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
