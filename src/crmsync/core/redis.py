"""Shared async Redis connection pool.

Sync coordination (locks, cancellation flags) and progress broadcasting
take the raw client and apply their own t:{tenant_id}: key prefix, the
same scoping every tenant-aware Redis key in this service uses.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.crmsync.config import get_settings

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


def tenant_key(tenant_id: str, *parts: object) -> str:
    """Build a tenant-scoped key: ``t:{tenant_id}:part1:part2...``."""
    suffix = ":".join(str(p) for p in parts)
    return f"t:{tenant_id}:{suffix}"
