"""Unit tests for the correspondence ledger."""

from __future__ import annotations

import pytest

from src.crmsync.crm.errors import PersistenceError
from src.crmsync.crm.field_mapping import fingerprint
from src.crmsync.crm.schemas import InternalEntityType, SyncDirection
from tests.fakes import CONNECTION_ID

USER = InternalEntityType.USER


class TestLedgerLinks:
    """Test linking and resolving record pairs."""

    async def test_link_then_resolve_both_ways(self, ledger):
        await ledger.link(CONNECTION_ID, USER, "u1", "contacts", "c-1", SyncDirection.OUTBOUND, {"email": "a@x.com"})

        by_internal = await ledger.resolve_external(CONNECTION_ID, USER, "u1")
        by_external = await ledger.resolve_internal(CONNECTION_ID, "contacts", "c-1")

        assert by_internal.external_id == "c-1"
        assert by_external.internal_id == "u1"
        assert by_internal.last_sync_hash == fingerprint({"email": "a@x.com"})

    async def test_unknown_records_resolve_to_none(self, ledger):
        assert await ledger.resolve_external(CONNECTION_ID, USER, "nobody") is None
        assert await ledger.resolve_internal(CONNECTION_ID, "contacts", "nothing") is None

    async def test_links_are_scoped_per_connection(self, ledger):
        await ledger.link(CONNECTION_ID, USER, "u1", "contacts", "c-1", SyncDirection.OUTBOUND, {})
        assert await ledger.resolve_external("other-conn", USER, "u1") is None

    async def test_relink_updates_in_place(self, ledger, store):
        first = await ledger.link(CONNECTION_ID, USER, "u1", "contacts", "c-1", SyncDirection.OUTBOUND, {"a": 1})
        second = await ledger.link(CONNECTION_ID, USER, "u1", "contacts", "c-1", SyncDirection.INBOUND, {"a": 2})

        assert second.id == first.id
        assert len(store.correspondences) == 1
        assert second.last_sync_direction == SyncDirection.INBOUND
        assert second.last_synced_fields == {"a": 2}
        assert second.last_synced_at >= first.last_synced_at

    async def test_none_snapshot_keeps_stored_snapshot(self, ledger):
        await ledger.link(CONNECTION_ID, USER, "u1", "contacts", "c-1", SyncDirection.OUTBOUND, {"a": 1})
        relinked = await ledger.link(CONNECTION_ID, USER, "u1", "contacts", "c-1", SyncDirection.INBOUND)

        assert relinked.last_synced_fields == {"a": 1}
        assert relinked.last_sync_hash == fingerprint({"a": 1})

    async def test_first_link_without_snapshot_is_empty(self, ledger):
        record = await ledger.link(CONNECTION_ID, USER, "u1", "contacts", "c-1", SyncDirection.INBOUND)
        assert record.last_synced_fields == {}

    async def test_external_record_linked_twice_raises(self, ledger):
        await ledger.link(CONNECTION_ID, USER, "u1", "contacts", "c-1", SyncDirection.OUTBOUND, {})
        with pytest.raises(PersistenceError):
            await ledger.link(CONNECTION_ID, USER, "u2", "contacts", "c-1", SyncDirection.OUTBOUND, {})

        assert (await ledger.resolve_internal(CONNECTION_ID, "contacts", "c-1")).internal_id == "u1"

    async def test_list_links_filters_by_type(self, ledger):
        await ledger.link(CONNECTION_ID, USER, "u1", "contacts", "c-1", SyncDirection.OUTBOUND, {})
        await ledger.link(
            CONNECTION_ID, InternalEntityType.COMPANY, "co1", "accounts", "a-1", SyncDirection.OUTBOUND, {}
        )

        assert len(await ledger.list_links(CONNECTION_ID)) == 2
        users = await ledger.list_links(CONNECTION_ID, USER)
        assert [link.internal_id for link in users] == ["u1"]


class TestLedgerLocks:
    """Test that record locks go through the coordinator."""

    async def test_record_lock_uses_coordinator_key(self, ledger, coordinator):
        async with ledger.record_lock(CONNECTION_ID, "user", "u1"):
            pass
        assert coordinator.locked_keys == [(CONNECTION_ID, "user", "u1")]

    async def test_internal_and_external_keys_do_not_collide(self, ledger, coordinator):
        async with ledger.internal_lock(CONNECTION_ID, InternalEntityType.COMPANY, "42"):
            async with ledger.external_lock(CONNECTION_ID, "company", "42"):
                pass
        assert coordinator.locked_keys == [
            (CONNECTION_ID, "int", "company", "42"),
            (CONNECTION_ID, "ext", "company", "42"),
        ]
