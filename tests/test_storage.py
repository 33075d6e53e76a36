"""Tests for in-memory stores, typed repositories and model serialization."""

from __future__ import annotations

import pytest

from lattice_shield import (
    Backup,
    Checkpoint,
    EncryptedEntry,
    EntryState,
    KeyMaterial,
    MigrationRun,
    MigrationStatus,
    SecurityLevel,
    StorageError,
    encode,
)
from lattice_shield.repositories import (
    CheckpointRepository,
    KeyMaterialRepository,
    MigrationRunRepository,
)


def make_keys(n: int = 1) -> KeyMaterial:
    return KeyMaterial(
        public_key=f"pk-{n}",
        private_key=f"sk-{n}",
        algorithm="ML-KEM-768",
        security_level=SecurityLevel.STANDARD,
    )


class TestKeyValueStore:
    async def test_values_are_copied(self, kv_store):
        value = {"items": [1]}
        await kv_store.set("n", value)
        value["items"].append(2)

        stored = await kv_store.get("n")
        stored["items"].append(3)

        assert await kv_store.get("n") == {"items": [1]}

    async def test_delete(self, kv_store):
        await kv_store.set("n", 1)
        assert await kv_store.delete("n")
        assert not await kv_store.delete("n")
        assert await kv_store.get("n") is None

    async def test_compare_and_set(self, kv_store):
        assert await kv_store.compare_and_set("status", None, "in_progress")
        assert not await kv_store.compare_and_set("status", None, "in_progress")
        assert not await kv_store.compare_and_set("status", "pending", "completed")
        assert await kv_store.compare_and_set("status", "in_progress", "completed")
        assert await kv_store.get("status") == "completed"

    async def test_set_if_absent(self, kv_store):
        assert await kv_store.set_if_absent("site", "a") == "a"
        assert await kv_store.set_if_absent("site", "b") == "a"


class TestEntryStore:
    async def test_pending_and_migrated(self, entry_store):
        envelope = encode("c", "ML-KEM-768", "s")
        await entry_store.store_entry(EncryptedEntry("1", envelope))
        await entry_store.store_entry(EncryptedEntry("2", "plain"))
        await entry_store.store_entry(EncryptedEntry("3", envelope))
        await entry_store.store_entry(EncryptedEntry("4", "legacy::abc"))

        assert await entry_store.count_envelopes() == 3
        assert [e.entry_id for e in await entry_store.list_pending("run", 10)] == ["1", "3", "4"]

        assert await entry_store.update_value("1", envelope, "run", EntryState.MIGRATED)
        assert await entry_store.mark("3", "run", EntryState.FAILED)

        assert [e.entry_id for e in await entry_store.list_pending("run", 10)] == ["4"]
        assert await entry_store.count_pending("run") == 1
        assert await entry_store.count_pending("other") == 3
        assert [e.entry_id for e in await entry_store.list_migrated("run")] == ["1"]
        assert [e.entry_id for e in await entry_store.list_envelopes(2)] == ["1", "3"]

    async def test_missing_entry(self, entry_store):
        assert await entry_store.get("x") is None
        assert not await entry_store.update_value("x", "v")
        assert not await entry_store.mark("x", None, None)

    async def test_returned_entries_are_copies(self, entry_store):
        await entry_store.store_entry(EncryptedEntry("1", "legacy::a"))
        entry = await entry_store.get("1")
        entry.value = "changed"

        assert (await entry_store.get("1")).value == "legacy::a"


class TestRepositories:
    async def test_keys_and_backup(self, kv_store):
        repo = KeyMaterialRepository(kv_store)
        keys = make_keys()

        assert await repo.get_current() is None
        await repo.save_current(keys)
        assert await repo.get_current() == keys

        await repo.save_backup(Backup(keys))
        assert (await repo.get_backup()).key_material == keys
        assert await repo.delete_backup()
        assert await repo.get_backup() is None

    async def test_checkpoint(self, kv_store):
        repo = CheckpointRepository(kv_store)
        checkpoint = Checkpoint("r1", make_keys(), MigrationStatus.PENDING, 7)

        await repo.save(checkpoint)

        assert await repo.get() == checkpoint
        assert await repo.delete()
        assert await repo.get() is None

    async def test_run_and_status(self, kv_store):
        repo = MigrationRunRepository(kv_store)
        assert await repo.get_status() is MigrationStatus.PENDING
        assert await repo.raw_status() is None

        assert await repo.transition(None, MigrationStatus.IN_PROGRESS)
        assert not await repo.transition(None, MigrationStatus.IN_PROGRESS)

        run = MigrationRun(
            run_id="r1",
            status=MigrationStatus.COMPLETED,
            security_level=SecurityLevel.HIGH,
            batch_size=50,
            verify_integrity=True,
            target_keys=make_keys(2),
            migrated_count=3,
        )
        await repo.save_run(run)

        assert await repo.get_run() == run
        assert await repo.get_status() is MigrationStatus.COMPLETED

    async def test_corrupt_values_raise_storage_error(self, kv_store):
        await kv_store.set("pqls_key_material", {"public_key": "x"})
        await kv_store.set("pqls_migration_status", "exploded")

        with pytest.raises(StorageError):
            await KeyMaterialRepository(kv_store).get_current()
        with pytest.raises(StorageError):
            await MigrationRunRepository(kv_store).get_status()


def test_key_material_repr_hides_private_key():
    assert "sk-1" not in repr(make_keys())
    assert "[REDACTED]" in repr(make_keys())


def test_status_parsing():
    assert MigrationStatus.from_str("IN_PROGRESS") is MigrationStatus.IN_PROGRESS
    assert not MigrationStatus.IN_PROGRESS.allows_new_run
    assert MigrationStatus.FAILED.allows_new_run
    assert SecurityLevel.from_str("High") is SecurityLevel.HIGH
