"""Tenant context propagation via Python contextvars.

Sync runs, scheduled jobs and webhook deliveries all execute on behalf of
one tenant. The TenantContext is set by the caller (worker, scheduler tick,
CLI) before touching tenant data and is read by get_tenant_session() to
scope every query to the tenant's schema.
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current task."""

    tenant_id: str
    tenant_slug: str
    schema_name: str  # e.g., "tenant_skyvera"


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current task.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped unit of work).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- task is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current task. Returns a token for reset."""
    return _tenant_context.set(ctx)


@contextmanager
def tenant_scope(ctx: TenantContext) -> Iterator[TenantContext]:
    """Run a block with ``ctx`` as the current tenant, restoring the previous one after."""
    token = set_tenant_context(ctx)
    try:
        yield ctx
    finally:
        _tenant_context.reset(token)
