"""
Storage abstractions for installation state and the protected-entry corpus.

This module provides:
- KeyValueStore: Abstract named-value store (identity, keys, checkpoint, logs)
- EntryStore: Abstract store of host entries holding protected field values
- InMemoryKeyValueStore / InMemoryEntryStore: Implementations for testing

Values held by a KeyValueStore are JSON-compatible (dicts, lists, strings,
numbers). Typed access lives in ``repositories``.
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Optional

from .envelope import is_envelope
from .models import EncryptedEntry, EntryState


class KeyValueStore(ABC):
    """
    Abstract persistent named-value store.

    All methods are async to support both in-memory and database backends.
    """

    @abstractmethod
    async def get(self, name: str) -> Optional[Any]:
        """Get a value by name (None if absent)."""
        ...

    @abstractmethod
    async def set(self, name: str, value: Any) -> None:
        """Create or replace a value."""
        ...

    @abstractmethod
    async def delete(self, name: str) -> bool:
        """Delete a value. Returns True if it existed."""
        ...

    @abstractmethod
    async def compare_and_set(
        self, name: str, expected: Optional[Any], value: Any
    ) -> bool:
        """
        Atomically replace a value if it currently equals ``expected``.

        ``expected=None`` means the name must be absent.

        Returns:
            True if the value was written
        """
        ...

    @abstractmethod
    async def set_if_absent(self, name: str, value: Any) -> Any:
        """
        Atomically store a value unless one exists.

        Returns:
            The value stored under name after the call
        """
        ...


class EntryStore(ABC):
    """
    Abstract store of host entries carrying protected field values.

    Entries are returned in a stable retrieval order. An entry is pending for
    a run when its value is an envelope and it has not been marked by that run.
    """

    @abstractmethod
    async def store_entry(self, entry: EncryptedEntry) -> None:
        """Create or replace an entry."""
        ...

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[EncryptedEntry]:
        """Get an entry by ID."""
        ...

    @abstractmethod
    async def count_envelopes(self) -> int:
        """Count entries whose value is an envelope."""
        ...

    @abstractmethod
    async def list_envelopes(self, limit: int) -> List[EncryptedEntry]:
        """List up to ``limit`` entries whose value is an envelope."""
        ...

    @abstractmethod
    async def list_pending(self, run_id: str, limit: int) -> List[EncryptedEntry]:
        """List up to ``limit`` envelope entries not yet marked by ``run_id``."""
        ...

    @abstractmethod
    async def count_pending(self, run_id: str) -> int:
        """Count envelope entries not yet marked by ``run_id``."""
        ...

    @abstractmethod
    async def list_migrated(self, run_id: str) -> List[EncryptedEntry]:
        """List entries marked MIGRATED by ``run_id``."""
        ...

    @abstractmethod
    async def update_value(
        self,
        entry_id: str,
        value: str,
        migration_id: Optional[str] = None,
        state: Optional[EntryState] = None,
    ) -> bool:
        """Replace an entry's value and migration mark. Returns False if not found."""
        ...

    @abstractmethod
    async def mark(
        self, entry_id: str, migration_id: Optional[str], state: Optional[EntryState]
    ) -> bool:
        """Set an entry's migration mark. Returns False if not found."""
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """
    In-memory named-value store for testing.

    Uses asyncio.Lock for safe concurrent access. Values are deep-copied on
    the way in and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def get(self, name: str) -> Optional[Any]:
        async with self._lock:
            return copy.deepcopy(self._values.get(name))

    async def set(self, name: str, value: Any) -> None:
        async with self._lock:
            self._values[name] = copy.deepcopy(value)

    async def delete(self, name: str) -> bool:
        async with self._lock:
            return self._values.pop(name, None) is not None

    async def compare_and_set(
        self, name: str, expected: Optional[Any], value: Any
    ) -> bool:
        async with self._lock:
            if self._values.get(name) != expected:
                return False
            self._values[name] = copy.deepcopy(value)
            return True

    async def set_if_absent(self, name: str, value: Any) -> Any:
        async with self._lock:
            if name not in self._values:
                self._values[name] = copy.deepcopy(value)
            return copy.deepcopy(self._values[name])


class InMemoryEntryStore(EntryStore):
    """
    In-memory entry store for testing.

    Retrieval order is insertion order.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, EncryptedEntry] = {}
        self._lock = asyncio.Lock()

    async def store_entry(self, entry: EncryptedEntry) -> None:
        async with self._lock:
            self._entries[entry.entry_id] = replace(entry)

    async def get(self, entry_id: str) -> Optional[EncryptedEntry]:
        async with self._lock:
            entry = self._entries.get(entry_id)
            return replace(entry) if entry else None

    async def count_envelopes(self) -> int:
        async with self._lock:
            return sum(1 for e in self._entries.values() if is_envelope(e.value))

    async def list_envelopes(self, limit: int) -> List[EncryptedEntry]:
        async with self._lock:
            found = [replace(e) for e in self._entries.values() if is_envelope(e.value)]
            return found[:limit]

    async def list_pending(self, run_id: str, limit: int) -> List[EncryptedEntry]:
        async with self._lock:
            found = [replace(e) for e in self._entries.values() if self._is_pending(e, run_id)]
            return found[:limit]

    async def count_pending(self, run_id: str) -> int:
        async with self._lock:
            return sum(1 for e in self._entries.values() if self._is_pending(e, run_id))

    async def list_migrated(self, run_id: str) -> List[EncryptedEntry]:
        async with self._lock:
            return [
                replace(e)
                for e in self._entries.values()
                if e.migration_id == run_id and e.migration_state is EntryState.MIGRATED
            ]

    async def update_value(
        self,
        entry_id: str,
        value: str,
        migration_id: Optional[str] = None,
        state: Optional[EntryState] = None,
    ) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            self._entries[entry_id] = replace(
                entry, value=value, migration_id=migration_id, migration_state=state
            )
            return True

    async def mark(
        self, entry_id: str, migration_id: Optional[str], state: Optional[EntryState]
    ) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            self._entries[entry_id] = replace(
                entry, migration_id=migration_id, migration_state=state
            )
            return True

    @staticmethod
    def _is_pending(entry: EncryptedEntry, run_id: str) -> bool:
        return is_envelope(entry.value) and entry.migration_id != run_id
