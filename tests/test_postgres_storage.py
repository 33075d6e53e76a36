"""PostgreSQL store tests (skipped unless DATABASE_URL is set)."""

from __future__ import annotations

import asyncpg
import pytest

from lattice_shield import (
    EncryptedEntry,
    EntryState,
    PostgresEntryStore,
    PostgresKeyValueStore,
    encode,
)


@pytest.fixture
def pg_store(pg_pool: asyncpg.Pool) -> PostgresKeyValueStore:
    return PostgresKeyValueStore(pg_pool)


@pytest.fixture
def pg_entries(pg_pool: asyncpg.Pool) -> PostgresEntryStore:
    return PostgresEntryStore(pg_pool)


class TestPostgresKeyValueStore:
    async def test_set_get_delete(self, pg_store):
        await pg_store.set("pqls_key_material", {"public_key": "pk", "nested": [1, 2]})

        assert await pg_store.get("pqls_key_material") == {"public_key": "pk", "nested": [1, 2]}
        assert await pg_store.delete("pqls_key_material")
        assert not await pg_store.delete("pqls_key_material")
        assert await pg_store.get("pqls_key_material") is None

    async def test_compare_and_set(self, pg_store):
        assert await pg_store.compare_and_set("pqls_migration_status", None, "in_progress")
        assert not await pg_store.compare_and_set("pqls_migration_status", None, "in_progress")
        assert not await pg_store.compare_and_set("pqls_migration_status", "pending", "failed")
        assert await pg_store.compare_and_set(
            "pqls_migration_status", "in_progress", "completed"
        )
        assert await pg_store.get("pqls_migration_status") == "completed"

    async def test_set_if_absent(self, pg_store):
        assert await pg_store.set_if_absent("pqls_site_id", "aaaa") == "aaaa"
        assert await pg_store.set_if_absent("pqls_site_id", "bbbb") == "aaaa"


class TestPostgresEntryStore:
    async def test_pending_filter(self, pg_entries):
        envelope = encode("c", "ML-KEM-768", "s")
        await pg_entries.store_entry(EncryptedEntry("1", envelope, field_id="f"))
        await pg_entries.store_entry(EncryptedEntry("2", "pqlsXpqXencrypted::lookalike"))
        await pg_entries.store_entry(EncryptedEntry("3", "legacy::abc"))

        assert await pg_entries.count_envelopes() == 2
        assert [e.entry_id for e in await pg_entries.list_pending("run", 10)] == ["1", "3"]

        await pg_entries.update_value("1", envelope, "run", EntryState.MIGRATED)
        await pg_entries.mark("3", "run", EntryState.FAILED)

        assert await pg_entries.count_pending("run") == 0
        [migrated] = await pg_entries.list_migrated("run")
        assert migrated.entry_id == "1"
        assert migrated.field_id == "f"
        assert migrated.migration_state is EntryState.MIGRATED

        await pg_entries.update_value("1", envelope)
        assert (await pg_entries.get("1")).migration_id is None
