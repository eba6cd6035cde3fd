"""Async SQLAlchemy plumbing for the per-tenant CRM sync tables.

All sync state (connections, entity mappings, the correspondence ledger,
sync logs) and the internal entities lives in one Postgres schema per
tenant. Models are declared against the placeholder schema ``tenant``;
sessions handed out by get_tenant_session() translate that placeholder
to the schema of the tenant bound in the current context.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import MetaData, event, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crmsync.config import get_settings
from src.crmsync.core.tenant import TenantContext, get_current_tenant

PLACEHOLDER_SCHEMA = "tenant"

_engine: AsyncEngine | None = None


# ── Engine ──────────────────────────────────────────────────────────────────


def _clear_session_state(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
    # Pooled connections may still carry app.current_tenant_id from their last borrower
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("RESET ALL")
    finally:
        cursor.close()


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, building it on first use."""
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    engine = create_async_engine(
        settings.DATABASE_URL,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
    )
    event.listen(engine.sync_engine, "checkout", _clear_session_state)
    _engine = engine
    return engine


# ── Models ──────────────────────────────────────────────────────────────────

tenant_metadata = MetaData(schema=PLACEHOLDER_SCHEMA)


class TenantBase(DeclarativeBase):
    """Declarative base for every table that lives in a tenant schema."""

    metadata = tenant_metadata


# ── Sessions ────────────────────────────────────────────────────────────────


async def _bind_tenant(conn: AsyncConnection, tenant: TenantContext) -> AsyncConnection:
    scoped = await conn.execution_options(
        schema_translate_map={PLACEHOLDER_SCHEMA: tenant.schema_name}
    )
    # set_config() takes bind parameters, unlike SET
    await scoped.execute(
        text("SELECT set_config('app.current_tenant_id', :tenant_id, false)"),
        {"tenant_id": tenant.tenant_id},
    )
    return scoped


async def get_tenant_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session scoped to the tenant bound by tenant_scope().

    Raises:
        RuntimeError: If no tenant is bound in the current context.
    """
    tenant = get_current_tenant()

    async with get_engine().connect() as conn:
        scoped = await _bind_tenant(conn, tenant)
        async with AsyncSession(bind=scoped, expire_on_commit=False) as session:
            yield session


async def close_db() -> None:
    """Dispose the engine's pool; the next get_engine() call rebuilds it."""
    global _engine
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
