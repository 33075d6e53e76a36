"""
PostgreSQL storage backends.

This module provides:
- PostgresKeyValueStore: Named JSON values in ``pqls_options``
- PostgresEntryStore: Protected field values in ``pqls_entries``
- create_schema: Create both tables if missing

Architecture:
- **pqls_options**: one JSONB value per name; compare-and-set is a single
  conditional UPDATE (or INSERT ... ON CONFLICT DO NOTHING for absent values)
- **pqls_entries**: one row per protected field value, ordered by ``position``
  so batches are retrieved in insertion order
"""

from __future__ import annotations

import json
from typing import Any, List, Optional

import asyncpg

from .envelope import ALL_PREFIXES
from .errors import StorageError
from .models import EncryptedEntry, EntryState
from .storage import EntryStore, KeyValueStore

SCHEMA = """
CREATE TABLE IF NOT EXISTS pqls_options (
    name        TEXT PRIMARY KEY,
    value       JSONB NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS pqls_entries (
    position         BIGSERIAL,
    entry_id         TEXT PRIMARY KEY,
    field_id         TEXT,
    value            TEXT NOT NULL,
    migration_id     TEXT,
    migration_state  TEXT
);

CREATE INDEX IF NOT EXISTS pqls_entries_position_idx ON pqls_entries (position);
CREATE INDEX IF NOT EXISTS pqls_entries_migration_idx ON pqls_entries (migration_id);
"""

# LIKE patterns matching any envelope prefix ("_" is a LIKE wildcard).
_ENVELOPE_PATTERNS = [p.replace("_", "\\_") + "%" for p in ALL_PREFIXES]

_ENTRY_COLUMNS = "entry_id, field_id, value, migration_id, migration_state"


async def create_schema(pool: asyncpg.Pool) -> None:
    """Create the lattice-shield tables if they do not exist."""
    try:
        await pool.execute(SCHEMA)
    except Exception as e:
        raise StorageError(f"Failed to create schema: {e}") from e


class PostgresKeyValueStore(KeyValueStore):
    """PostgreSQL named-value store."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    async def get(self, name: str) -> Optional[Any]:
        query = "SELECT value::TEXT AS value FROM pqls_options WHERE name = $1"
        try:
            row = await self._pool.fetchrow(query, name)
        except Exception as e:
            raise StorageError(f"Failed to read option {name}: {e}") from e
        if row is None:
            return None
        return json.loads(row["value"])

    async def set(self, name: str, value: Any) -> None:
        query = """
            INSERT INTO pqls_options (name, value, updated_at)
            VALUES ($1, $2::jsonb, now())
            ON CONFLICT (name) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
        """
        try:
            await self._pool.execute(query, name, json.dumps(value))
        except Exception as e:
            raise StorageError(f"Failed to write option {name}: {e}") from e

    async def delete(self, name: str) -> bool:
        query = "DELETE FROM pqls_options WHERE name = $1 RETURNING name"
        try:
            row = await self._pool.fetchrow(query, name)
        except Exception as e:
            raise StorageError(f"Failed to delete option {name}: {e}") from e
        return row is not None

    async def compare_and_set(
        self, name: str, expected: Optional[Any], value: Any
    ) -> bool:
        if expected is None:
            query = """
                INSERT INTO pqls_options (name, value, updated_at)
                VALUES ($1, $2::jsonb, now())
                ON CONFLICT (name) DO NOTHING
                RETURNING name
            """
            args = (name, json.dumps(value))
        else:
            query = """
                UPDATE pqls_options SET value = $2::jsonb, updated_at = now()
                WHERE name = $1 AND value = $3::jsonb
                RETURNING name
            """
            args = (name, json.dumps(value), json.dumps(expected))
        try:
            row = await self._pool.fetchrow(query, *args)
        except Exception as e:
            raise StorageError(f"Failed to compare-and-set option {name}: {e}") from e
        return row is not None

    async def set_if_absent(self, name: str, value: Any) -> Any:
        insert = """
            INSERT INTO pqls_options (name, value, updated_at)
            VALUES ($1, $2::jsonb, now())
            ON CONFLICT (name) DO NOTHING
        """
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(insert, name, json.dumps(value))
                    stored = await conn.fetchval(
                        "SELECT value::TEXT FROM pqls_options WHERE name = $1", name
                    )
        except Exception as e:
            raise StorageError(f"Failed to initialize option {name}: {e}") from e
        return json.loads(stored)


class PostgresEntryStore(EntryStore):
    """PostgreSQL store for protected field values."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def store_entry(self, entry: EncryptedEntry) -> None:
        query = f"""
            INSERT INTO pqls_entries ({_ENTRY_COLUMNS})
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (entry_id) DO UPDATE SET
                field_id = EXCLUDED.field_id,
                value = EXCLUDED.value,
                migration_id = EXCLUDED.migration_id,
                migration_state = EXCLUDED.migration_state
        """
        try:
            await self._pool.execute(
                query,
                entry.entry_id,
                entry.field_id,
                entry.value,
                entry.migration_id,
                entry.migration_state.value if entry.migration_state else None,
            )
        except Exception as e:
            raise StorageError(f"Failed to store entry {entry.entry_id}: {e}") from e

    async def get(self, entry_id: str) -> Optional[EncryptedEntry]:
        query = f"SELECT {_ENTRY_COLUMNS} FROM pqls_entries WHERE entry_id = $1"
        try:
            row = await self._pool.fetchrow(query, entry_id)
        except Exception as e:
            raise StorageError(f"Failed to get entry {entry_id}: {e}") from e
        return self._row_to_entry(row) if row else None

    async def count_envelopes(self) -> int:
        query = "SELECT COUNT(*) FROM pqls_entries WHERE value LIKE ANY($1::text[])"
        try:
            return int(await self._pool.fetchval(query, _ENVELOPE_PATTERNS))
        except Exception as e:
            raise StorageError(f"Failed to count entries: {e}") from e

    async def list_envelopes(self, limit: int) -> List[EncryptedEntry]:
        query = f"""
            SELECT {_ENTRY_COLUMNS} FROM pqls_entries
            WHERE value LIKE ANY($1::text[])
            ORDER BY position
            LIMIT $2
        """
        try:
            rows = await self._pool.fetch(query, _ENVELOPE_PATTERNS, limit)
        except Exception as e:
            raise StorageError(f"Failed to list entries: {e}") from e
        return [self._row_to_entry(row) for row in rows]

    async def list_pending(self, run_id: str, limit: int) -> List[EncryptedEntry]:
        query = f"""
            SELECT {_ENTRY_COLUMNS} FROM pqls_entries
            WHERE value LIKE ANY($1::text[])
              AND migration_id IS DISTINCT FROM $2::text
            ORDER BY position
            LIMIT $3
        """
        try:
            rows = await self._pool.fetch(query, _ENVELOPE_PATTERNS, run_id, limit)
        except Exception as e:
            raise StorageError(f"Failed to list pending entries: {e}") from e
        return [self._row_to_entry(row) for row in rows]

    async def count_pending(self, run_id: str) -> int:
        query = """
            SELECT COUNT(*) FROM pqls_entries
            WHERE value LIKE ANY($1::text[])
              AND migration_id IS DISTINCT FROM $2::text
        """
        try:
            return int(await self._pool.fetchval(query, _ENVELOPE_PATTERNS, run_id))
        except Exception as e:
            raise StorageError(f"Failed to count pending entries: {e}") from e

    async def list_migrated(self, run_id: str) -> List[EncryptedEntry]:
        query = f"""
            SELECT {_ENTRY_COLUMNS} FROM pqls_entries
            WHERE migration_id = $1 AND migration_state = $2
            ORDER BY position
        """
        try:
            rows = await self._pool.fetch(query, run_id, EntryState.MIGRATED.value)
        except Exception as e:
            raise StorageError(f"Failed to list migrated entries: {e}") from e
        return [self._row_to_entry(row) for row in rows]

    async def update_value(
        self,
        entry_id: str,
        value: str,
        migration_id: Optional[str] = None,
        state: Optional[EntryState] = None,
    ) -> bool:
        query = """
            UPDATE pqls_entries
            SET value = $2, migration_id = $3, migration_state = $4
            WHERE entry_id = $1
            RETURNING entry_id
        """
        try:
            row = await self._pool.fetchrow(
                query, entry_id, value, migration_id, state.value if state else None
            )
        except Exception as e:
            raise StorageError(f"Failed to update entry {entry_id}: {e}") from e
        return row is not None

    async def mark(
        self, entry_id: str, migration_id: Optional[str], state: Optional[EntryState]
    ) -> bool:
        query = """
            UPDATE pqls_entries SET migration_id = $2, migration_state = $3
            WHERE entry_id = $1
            RETURNING entry_id
        """
        try:
            row = await self._pool.fetchrow(
                query, entry_id, migration_id, state.value if state else None
            )
        except Exception as e:
            raise StorageError(f"Failed to mark entry {entry_id}: {e}") from e
        return row is not None

    @staticmethod
    def _row_to_entry(row: asyncpg.Record) -> EncryptedEntry:
        """Convert database row to EncryptedEntry."""
        state = row["migration_state"]
        return EncryptedEntry(
            entry_id=row["entry_id"],
            field_id=row["field_id"],
            value=row["value"],
            migration_id=row["migration_id"],
            migration_state=EntryState(state) if state else None,
        )
