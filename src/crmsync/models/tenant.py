"""Internal entities that CRM connections read from and write to.

Users, companies and locations are the records an entity mapping points at.
They live in the tenant schema alongside the sync tables, so every
uniqueness rule includes tenant_id.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.crmsync.core.database import TenantBase


def _optional_str(length: int) -> Mapped[str | None]:
    return mapped_column(String(length), nullable=True)


def _optional_ref() -> Mapped[uuid.UUID | None]:
    return mapped_column(UUID(as_uuid=True), nullable=True)


class _EntityColumns:
    """Columns every syncable internal entity carries."""

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    # Target for custom: and unmapped CRM properties
    custom_fields: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    # Compared against the connection watermark for incremental outbound runs
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class User(_EntityColumns, TenantBase):
    """A person; maps to HubSpot contacts and Dynamics contacts/leads."""

    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),)

    email: Mapped[str | None] = _optional_str(255)
    user_name: Mapped[str | None] = _optional_str(255)
    first_name: Mapped[str | None] = _optional_str(200)
    last_name: Mapped[str | None] = _optional_str(200)
    phone_number: Mapped[str | None] = _optional_str(50)
    title: Mapped[str | None] = _optional_str(200)
    photo_uri: Mapped[str | None] = _optional_str(1000)
    company_id: Mapped[uuid.UUID | None] = _optional_ref()
    location_id: Mapped[uuid.UUID | None] = _optional_ref()
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))


class Company(_EntityColumns, TenantBase):
    """An organisation; maps to HubSpot companies and Dynamics accounts."""

    __tablename__ = "companies"

    title: Mapped[str | None] = _optional_str(300)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = _optional_str(500)
    phone_number: Mapped[str | None] = _optional_str(50)
    logo_uri: Mapped[str | None] = _optional_str(1000)


class Location(_EntityColumns, TenantBase):
    """A postal address, optionally owned by a company."""

    __tablename__ = "locations"

    company_id: Mapped[uuid.UUID | None] = _optional_ref()
    title: Mapped[str | None] = _optional_str(300)
    address: Mapped[str | None] = _optional_str(500)
    city: Mapped[str | None] = _optional_str(200)
    state: Mapped[str | None] = _optional_str(100)
    zip_code: Mapped[str | None] = _optional_str(20)
    country: Mapped[str | None] = _optional_str(100)
    phone_number: Mapped[str | None] = _optional_str(50)
