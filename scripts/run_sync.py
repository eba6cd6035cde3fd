#!/usr/bin/env python3
"""CLI script to run a CRM sync for one tenant connection.

Usage:
    uv run python scripts/run_sync.py --tenant-id <uuid> --slug skyvera --connection <id>
    uv run python scripts/run_sync.py --tenant-id <uuid> --slug skyvera --connection <id> --incremental
    uv run python scripts/run_sync.py --tenant-id <uuid> --slug skyvera --entity-mapping <id>
    uv run python scripts/run_sync.py --tenant-id <uuid> --slug skyvera --connection <id> --duplicates
    uv run python scripts/run_sync.py --tenant-id <uuid> --slug skyvera --connection <id> --diagnostics

Connects directly to the database and Redis using DATABASE_URL / REDIS_URL
from environment or .env file. Exits non-zero when the run did not succeed.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.crmsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(args: argparse.Namespace) -> int:
    """Run the requested operation inside the tenant's scope."""
    from src.crmsync.core.database import close_db
    from src.crmsync.core.logging import configure_structlog
    from src.crmsync.core.redis import close_redis
    from src.crmsync.core.tenant import TenantContext, tenant_scope
    from src.crmsync.crm.bootstrap import build_services

    configure_structlog()
    ctx = TenantContext(
        tenant_id=args.tenant_id,
        tenant_slug=args.slug,
        schema_name=args.schema or f"tenant_{args.slug}",
    )

    try:
        with tenant_scope(ctx):
            services = build_services(ctx.tenant_id)

            if args.duplicates:
                report = await services.duplicates.detect(args.connection, args.entity_mapping)
                print(report.model_dump_json(indent=2))
                return 0

            if args.diagnostics:
                diagnostics = await services.reporter.get_diagnostics(args.connection)
                print(diagnostics.model_dump_json(indent=2))
                return 0 if diagnostics.healthy else 1

            if args.entity_mapping:
                if args.relationships:
                    result = await services.engine.sync_relationships(args.entity_mapping)
                else:
                    result = await services.engine.sync_entity_mapping(
                        args.entity_mapping, incremental=args.incremental
                    )
            elif args.incremental:
                result = await services.engine.sync_incremental(args.connection)
            else:
                result = await services.engine.sync_all(args.connection)

            print(f"Sync {result.sync_id}: {result.state.value}")
            print(f"  {result.message}")
            stats = result.stats
            print(
                f"  processed={stats.total_processed} succeeded={stats.success_count} "
                f"failed={stats.failed_count} skipped={stats.skipped_count} "
                f"created={stats.created_count} updated={stats.updated_count}"
            )
            for error in result.errors:
                print(f"  ! {error}")
            return 0 if result.success else 1
    finally:
        await close_redis()
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a CRM sync")
    parser.add_argument("--tenant-id", required=True, help="Tenant UUID")
    parser.add_argument("--slug", required=True, help="Tenant slug (e.g., skyvera)")
    parser.add_argument("--schema", default=None, help="Tenant schema (default: tenant_<slug>)")
    parser.add_argument("--connection", default=None, help="CRM connection id")
    parser.add_argument("--entity-mapping", default=None, help="Sync a single entity mapping")
    parser.add_argument("--incremental", action="store_true", help="Only records changed since the last successful sync")
    parser.add_argument("--relationships", action="store_true", help="Re-evaluate relationships only (needs --entity-mapping)")
    parser.add_argument("--duplicates", action="store_true", help="Print a duplicate report instead of syncing")
    parser.add_argument("--diagnostics", action="store_true", help="Print connection diagnostics instead of syncing")
    args = parser.parse_args()

    if not args.connection and not args.entity_mapping:
        parser.error("one of --connection or --entity-mapping is required")
    if (args.duplicates or args.diagnostics) and not args.connection:
        parser.error("--duplicates and --diagnostics require --connection")
    if args.relationships and not args.entity_mapping:
        parser.error("--relationships requires --entity-mapping")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
