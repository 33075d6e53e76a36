"""
Typed repositories over a KeyValueStore.

Each repository owns the stored names and serialization for one entity, so
call sites depend on a narrow contract rather than on raw option names.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .models import Backup, Checkpoint, KeyMaterial, MigrationRun, MigrationStatus
from .storage import KeyValueStore

SITE_ID = "pqls_site_id"
KEY_MATERIAL = "pqls_key_material"
KEY_BACKUP = "pqls_key_backup"
CHECKPOINT = "pqls_migration_checkpoint"
MIGRATION_STATUS = "pqls_migration_status"
MIGRATION_RUN = "pqls_migration_run"
ERROR_LOG = "pqls_error_logs"
ACTIVITY_LOG = "pqls_activity_log"
AUDIT_LOG = "pqls_audit_log"
ADMIN_NOTICES = "pqls_admin_notices"


class IdentityRepository:
    """Persisted installation identity."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def get(self) -> Optional[str]:
        value = await self._store.get(SITE_ID)
        return value or None

    async def create_if_absent(self, site_id: str) -> str:
        """Persist ``site_id`` unless an identity exists; return the stored one."""
        return await self._store.set_if_absent(SITE_ID, site_id)


class KeyMaterialRepository:
    """Current key material and the single retained backup."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def get_current(self) -> Optional[KeyMaterial]:
        data = await self._store.get(KEY_MATERIAL)
        return KeyMaterial.from_dict(data) if data else None

    async def save_current(self, keys: KeyMaterial) -> None:
        await self._store.set(KEY_MATERIAL, keys.to_dict())

    async def get_backup(self) -> Optional[Backup]:
        data = await self._store.get(KEY_BACKUP)
        return Backup.from_dict(data) if data else None

    async def save_backup(self, backup: Backup) -> None:
        await self._store.set(KEY_BACKUP, backup.to_dict())

    async def delete_backup(self) -> bool:
        return await self._store.delete(KEY_BACKUP)


class CheckpointRepository:
    """The most recent migration checkpoint."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def get(self) -> Optional[Checkpoint]:
        data = await self._store.get(CHECKPOINT)
        return Checkpoint.from_dict(data) if data else None

    async def save(self, checkpoint: Checkpoint) -> None:
        await self._store.set(CHECKPOINT, checkpoint.to_dict())

    async def delete(self) -> bool:
        return await self._store.delete(CHECKPOINT)


class MigrationRunRepository:
    """
    Migration status and run record.

    The status is kept under its own name so the start transition can be a
    single compare-and-set on a scalar value.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def get_status(self) -> MigrationStatus:
        raw = await self._store.get(MIGRATION_STATUS)
        return MigrationStatus.from_str(raw) if raw else MigrationStatus.PENDING

    async def raw_status(self) -> Optional[str]:
        return await self._store.get(MIGRATION_STATUS)

    async def transition(self, expected_raw: Optional[str], status: MigrationStatus) -> bool:
        """Atomically move from the observed raw status to ``status``."""
        return await self._store.compare_and_set(MIGRATION_STATUS, expected_raw, status.value)

    async def set_status(self, status: MigrationStatus) -> None:
        await self._store.set(MIGRATION_STATUS, status.value)

    async def get_run(self) -> Optional[MigrationRun]:
        data = await self._store.get(MIGRATION_RUN)
        return MigrationRun.from_dict(data) if data else None

    async def save_run(self, run: MigrationRun) -> None:
        """Persist the run record and mirror its status."""
        await self._store.set(MIGRATION_RUN, run.to_dict())
        await self._store.set(MIGRATION_STATUS, run.status.value)


class AuditLogRepository:
    """Capped error, activity and audit logs plus admin notices."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def append(
        self, name: str, entry: Dict[str, Any], cap: int, newest_first: bool = False
    ) -> None:
        """Append to a capped log, evicting the oldest entries past ``cap``."""
        entries: List[Dict[str, Any]] = await self._store.get(name) or []
        if newest_first:
            entries.insert(0, entry)
            entries = entries[:cap]
        else:
            entries.append(entry)
            entries = entries[-cap:]
        await self._store.set(name, entries)

    async def entries(self, name: str) -> List[Dict[str, Any]]:
        return await self._store.get(name) or []

    async def notices(self) -> Dict[str, Dict[str, Any]]:
        return await self._store.get(ADMIN_NOTICES) or {}

    async def save_notices(self, notices: Dict[str, Dict[str, Any]]) -> None:
        await self._store.set(ADMIN_NOTICES, notices)
