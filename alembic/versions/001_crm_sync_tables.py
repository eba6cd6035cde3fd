"""CRM sync tables: internal entities, connection config, ledger and logs with RLS.

Revision ID: 001_crm_sync_tables
Revises:
Create Date: 2026-10-17

Note: This migration uses schema="tenant" placeholder. When run via
schema_translate_map, "tenant" is replaced with the actual tenant schema.
However, for RLS and index DDL we use the actual schema name from -x args.
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON, UUID

# revision identifiers, used by Alembic.
revision: str = "001_crm_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TABLES = (
    "users",
    "companies",
    "locations",
    "crm_connections",
    "crm_entity_mappings",
    "crm_field_mappings",
    "crm_relationship_mappings",
    "crm_external_ids",
    "crm_sync_logs",
)


def _id_columns() -> list[sa.Column]:
    return [
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
    ]


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _custom_fields() -> sa.Column:
    return sa.Column("custom_fields", JSON, server_default=sa.text("'{}'::json"), nullable=False)


def _direction(name: str = "sync_direction") -> sa.Column:
    return sa.Column(name, sa.String(20), server_default=sa.text("'bidirectional'"), nullable=False)


def upgrade() -> None:
    # Get the actual schema name from -x args
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    # ── Internal entities ──────────────────────────────────────────────────

    op.create_table(
        "users",
        *_id_columns(),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("user_name", sa.String(255), nullable=True),
        sa.Column("first_name", sa.String(200), nullable=True),
        sa.Column("last_name", sa.String(200), nullable=True),
        sa.Column("phone_number", sa.String(50), nullable=True),
        sa.Column("title", sa.String(200), nullable=True),
        sa.Column("photo_uri", sa.String(1000), nullable=True),
        sa.Column("company_id", UUID(as_uuid=True), nullable=True),
        sa.Column("location_id", UUID(as_uuid=True), nullable=True),
        _custom_fields(),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
        schema="tenant",
    )

    op.create_table(
        "companies",
        *_id_columns(),
        sa.Column("title", sa.String(300), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("website", sa.String(500), nullable=True),
        sa.Column("phone_number", sa.String(50), nullable=True),
        sa.Column("logo_uri", sa.String(1000), nullable=True),
        _custom_fields(),
        *_timestamps(),
        schema="tenant",
    )

    op.create_table(
        "locations",
        *_id_columns(),
        sa.Column("company_id", UUID(as_uuid=True), nullable=True),
        sa.Column("title", sa.String(300), nullable=True),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("city", sa.String(200), nullable=True),
        sa.Column("state", sa.String(100), nullable=True),
        sa.Column("zip_code", sa.String(20), nullable=True),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("phone_number", sa.String(50), nullable=True),
        _custom_fields(),
        *_timestamps(),
        schema="tenant",
    )

    # ── Sync configuration ─────────────────────────────────────────────────

    op.create_table(
        "crm_connections",
        *_id_columns(),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("display_name", sa.String(200), server_default=sa.text("''"), nullable=False),
        sa.Column("credentials", JSON, server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("environment_url", sa.String(500), nullable=True),
        sa.Column("webhook_secret", sa.String(500), nullable=True),
        _direction(),
        sa.Column("sync_interval_minutes", sa.Integer(), server_default=sa.text("15"), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_successful_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        *_timestamps(),
        schema="tenant",
    )

    op.create_table(
        "crm_entity_mappings",
        *_id_columns(),
        sa.Column("connection_id", UUID(as_uuid=True), nullable=False),
        sa.Column("external_entity", sa.String(200), nullable=False),
        sa.Column("internal_entity_type", sa.String(20), nullable=False),
        sa.Column("display_name", sa.String(200), server_default=sa.text("''"), nullable=False),
        _direction(),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("filter_expression", sa.Text(), nullable=True),
        sa.Column("external_primary_key", sa.String(200), server_default=sa.text("'id'"), nullable=False),
        sa.Column("external_modified_field", sa.String(200), nullable=True),
        sa.Column("identity_field", sa.String(200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "tenant_id", "connection_id", "external_entity", "internal_entity_type",
            name="uq_crm_entity_mapping",
        ),
        schema="tenant",
    )

    op.create_table(
        "crm_field_mappings",
        *_id_columns(),
        sa.Column("entity_mapping_id", UUID(as_uuid=True), nullable=False),
        sa.Column("internal_field", sa.String(200), nullable=False),
        sa.Column("external_field", sa.String(200), nullable=False),
        _direction("direction"),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("is_required", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("transformation_type", sa.String(50), nullable=True),
        sa.Column("transformation_config", JSON, nullable=True),
        sa.Column("display_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        schema="tenant",
    )

    op.create_table(
        "crm_relationship_mappings",
        *_id_columns(),
        sa.Column("entity_mapping_id", UUID(as_uuid=True), nullable=False),
        sa.Column("internal_field", sa.String(200), nullable=False),
        sa.Column("related_entity_type", sa.String(20), nullable=False),
        sa.Column("external_lookup_field", sa.String(200), nullable=False),
        sa.Column("external_related_entity", sa.String(200), nullable=False),
        _direction("direction"),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("auto_create_related", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("sync_null_values", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("display_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        schema="tenant",
    )

    # ── Ledger and audit ───────────────────────────────────────────────────

    op.create_table(
        "crm_external_ids",
        *_id_columns(),
        sa.Column("connection_id", UUID(as_uuid=True), nullable=False),
        sa.Column("internal_type", sa.String(20), nullable=False),
        sa.Column("internal_id", sa.String(100), nullable=False),
        sa.Column("external_entity", sa.String(200), nullable=False),
        sa.Column("external_id", sa.String(200), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_sync_direction", sa.String(20), nullable=False),
        sa.Column("last_sync_hash", sa.String(64), nullable=True),
        sa.Column("last_synced_fields", JSON, server_default=sa.text("'{}'::json"), nullable=False),
        sa.UniqueConstraint(
            "tenant_id", "connection_id", "internal_type", "internal_id",
            name="uq_crm_external_ids_internal",
        ),
        sa.UniqueConstraint(
            "tenant_id", "connection_id", "external_entity", "external_id",
            name="uq_crm_external_ids_external",
        ),
        schema="tenant",
    )

    op.create_table(
        "crm_sync_logs",
        *_id_columns(),
        sa.Column("connection_id", UUID(as_uuid=True), nullable=False),
        sa.Column("entity_mapping_id", UUID(as_uuid=True), nullable=True),
        sa.Column("sync_id", sa.String(32), nullable=False),
        sa.Column("internal_type", sa.String(20), nullable=True),
        sa.Column("internal_id", sa.String(100), nullable=True),
        sa.Column("external_entity", sa.String(200), nullable=True),
        sa.Column("external_id", sa.String(200), nullable=True),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("changed_fields", JSON, server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        schema="tenant",
    )

    # Enable and FORCE Row Level Security, one tenant_isolation policy per table
    for table in TABLES:
        op.execute(f'ALTER TABLE "{schema}".{table} ENABLE ROW LEVEL SECURITY')
        op.execute(f'ALTER TABLE "{schema}".{table} FORCE ROW LEVEL SECURITY')
        op.execute(f"""
            CREATE POLICY tenant_isolation ON "{schema}".{table}
            FOR ALL
            USING (tenant_id::text = current_setting('app.current_tenant_id', true))
            WITH CHECK (tenant_id::text = current_setting('app.current_tenant_id', true))
        """)
        op.execute(f'CREATE INDEX idx_{table}_tenant ON "{schema}".{table}(tenant_id)')

    # Lookup paths used by the sync engine
    op.execute(
        f'CREATE INDEX idx_crm_entity_mappings_connection ON "{schema}".crm_entity_mappings'
        "(tenant_id, connection_id)"
    )
    op.execute(
        f'CREATE INDEX idx_crm_field_mappings_entity_mapping ON "{schema}".crm_field_mappings'
        "(tenant_id, entity_mapping_id)"
    )
    op.execute(
        f'CREATE INDEX idx_crm_relationship_mappings_entity_mapping ON "{schema}".crm_relationship_mappings'
        "(tenant_id, entity_mapping_id)"
    )
    op.execute(
        f'CREATE INDEX idx_crm_sync_logs_connection_synced ON "{schema}".crm_sync_logs'
        "(tenant_id, connection_id, synced_at)"
    )
    op.execute(
        f'CREATE INDEX idx_crm_sync_logs_sync_id ON "{schema}".crm_sync_logs(tenant_id, sync_id)'
    )
    op.execute(f'CREATE INDEX idx_users_email_lower ON "{schema}".users(tenant_id, lower(email))')


def downgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    for table in reversed(TABLES):
        op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON "{schema}".{table}')
        op.drop_table(table, schema="tenant")
