"""Alembic environment: migrate one tenant schema per invocation.

    alembic -x schema=tenant_skyvera upgrade head

The version table is written into the target schema, so each tenant
tracks its own migration head.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool, text

import src.crmsync.crm.models  # noqa: F401  (registers CRM tables on TenantBase)
import src.crmsync.models.tenant  # noqa: F401  (registers internal entity tables)
from src.crmsync.config import get_settings
from src.crmsync.core.database import PLACEHOLDER_SCHEMA, TenantBase

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_schema = context.get_x_argument(as_dictionary=True).get("schema", PLACEHOLDER_SCHEMA)


def _sync_url() -> str:
    # Alembic drives a blocking engine; swap the async driver for psycopg2
    return get_settings().DATABASE_URL.replace("+asyncpg", "")


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=TenantBase.metadata,
        version_table_schema=target_schema,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL for the target schema without connecting."""
    _configure(url=_sync_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Create the target schema if needed, then migrate it."""
    engine = create_engine(_sync_url(), poolclass=pool.NullPool)

    with engine.connect() as connection:
        connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{target_schema}"'))
        connection.commit()

        _configure(
            connection=connection,
            include_schemas=True,
            schema_translate_map={PLACEHOLDER_SCHEMA: target_schema},
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
