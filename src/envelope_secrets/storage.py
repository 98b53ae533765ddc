"""
Storage abstractions for entries and their wrapped keys.

This module provides:
- EntryStore / EntryKeyStore: Abstract per-table operations, always run
  inside a transaction handed out by a StorageBackend
- StorageBackend: Abstract transaction factory owning both stores
- InMemoryBackend: asyncio-safe in-memory implementation for testing
- Supporting data structures: EntryState, EntryMeta, Entry, EntryKeyMeta,
  StoredEntryKey
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional
from uuid import UUID, uuid4

from .crypto import constant_time_equal
from .errors import (
    CreateFailedError,
    EntryExpiredError,
    EntryKeyNotFoundError,
    EntryNotFoundError,
)
from .keys import generate_token


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntryState(Enum):
    """Lifecycle state of an entry row."""

    ACTIVE = "ACTIVE"  # Readable
    CONSUMED = "CONSUMED"  # Out of reads, pending removal
    EXPIRED = "EXPIRED"  # Past expiry, pending removal

    def __str__(self) -> str:
        return self.value


@dataclass
class EntryMeta:
    """Entry metadata (everything but the ciphertext)."""

    entry_id: UUID
    remaining_reads: int
    created_at: datetime
    expire_at: datetime
    content_type: str = "text/plain"
    accessed_at: Optional[datetime] = None
    delete_token: Optional[str] = field(default=None, repr=False)

    def state(self, now: datetime) -> EntryState:
        if self.remaining_reads <= 0:
            return EntryState.CONSUMED
        if now >= self.expire_at:
            return EntryState.EXPIRED
        return EntryState.ACTIVE


@dataclass
class Entry:
    """Entry row: metadata plus the sealed payload."""

    meta: EntryMeta
    ciphertext: bytes = field(repr=False)


@dataclass
class EntryKeyMeta:
    """Metadata of one wrapped copy of an entry's DEK."""

    entry_key_id: UUID
    entry_id: UUID
    created_at: datetime
    expire_at: Optional[datetime] = None
    remaining_reads: Optional[int] = None
    accessed_at: Optional[datetime] = None

    def is_usable(self, now: datetime) -> bool:
        """Within its own bounds; unset bounds never limit."""
        if self.expire_at is not None and now >= self.expire_at:
            return False
        if self.remaining_reads is not None and self.remaining_reads <= 0:
            return False
        return True


@dataclass
class StoredEntryKey:
    """Entry key row: metadata, wrapped DEK and hash of the unwrapped DEK."""

    meta: EntryKeyMeta
    wrapped_dek: bytes = field(repr=False)
    key_hash: bytes = field(repr=False)


class StorageTransaction(ABC):
    """Handle to an open transaction. Stores only accept their own backend's handle."""

    pass


class EntryStore(ABC):
    """
    Entry table operations.

    State machine per entry: ACTIVE -> CONSUMED | EXPIRED -> deleted.
    """

    @abstractmethod
    async def create(
        self,
        tx: StorageTransaction,
        entry_id: UUID,
        ciphertext: bytes,
        ttl: timedelta,
        max_reads: int,
        content_type: str = "text/plain",
    ) -> EntryMeta:
        """Insert an entry with a fresh delete token."""
        ...

    @abstractmethod
    async def read_and_consume(self, tx: StorageTransaction, entry_id: UUID) -> Entry:
        """Lock, validate and decrement; delete the row when no reads remain."""
        ...

    @abstractmethod
    async def read_meta(
        self, tx: StorageTransaction, entry_id: UUID, for_update: bool = False
    ) -> EntryMeta:
        """Validate and return metadata without consuming a read."""
        ...

    @abstractmethod
    async def verify_delete(
        self, tx: StorageTransaction, entry_id: UUID, token: str
    ) -> bool:
        """Compare ``token`` with the stored delete token in constant time."""
        ...

    @abstractmethod
    async def delete(self, tx: StorageTransaction, entry_id: UUID) -> bool:
        """Remove an entry and its keys. Returns False if it was already gone."""
        ...

    @abstractmethod
    async def delete_expired(self, tx: StorageTransaction) -> int:
        """Remove expired or exhausted entries. Returns the number removed."""
        ...


class EntryKeyStore(ABC):
    """Entry key table operations, scoped under a parent entry."""

    @abstractmethod
    async def create_key(
        self,
        tx: StorageTransaction,
        entry_id: UUID,
        wrapped_dek: bytes,
        key_hash: bytes,
        ttl: Optional[timedelta] = None,
        max_reads: Optional[int] = None,
    ) -> EntryKeyMeta:
        """Insert a wrapped DEK with optional independent bounds."""
        ...

    @abstractmethod
    async def candidates(
        self, tx: StorageTransaction, entry_id: UUID
    ) -> List[StoredEntryKey]:
        """Usable key rows of an entry, oldest first, locked for update."""
        ...

    @abstractmethod
    async def consume(self, tx: StorageTransaction, entry_key_id: UUID) -> EntryKeyMeta:
        """Decrement the key's own counter; delete the row once spent or expired."""
        ...

    @abstractmethod
    async def list_active(
        self, tx: StorageTransaction, entry_id: UUID
    ) -> List[EntryKeyMeta]:
        """Usable keys of an entry, oldest first."""
        ...

    @abstractmethod
    async def delete(self, tx: StorageTransaction, entry_key_id: UUID) -> bool:
        """Remove one key. Returns False if it was already gone."""
        ...

    @abstractmethod
    async def delete_for_entry(self, tx: StorageTransaction, entry_id: UUID) -> int:
        """Remove all keys of an entry."""
        ...

    @abstractmethod
    async def delete_expired(self, tx: StorageTransaction) -> int:
        """Remove expired or exhausted keys. Returns the number removed."""
        ...


class StorageBackend(ABC):
    """
    Transactional storage for entries and entry keys.

    Every store call must run inside ``transaction()``. Leaving the context
    normally commits; any exception, cancellation included, rolls back.
    """

    @property
    @abstractmethod
    def entries(self) -> EntryStore:
        ...

    @property
    @abstractmethod
    def entry_keys(self) -> EntryKeyStore:
        ...

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StorageTransaction]:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        pass


# =============================================================================
# In-memory backend
# =============================================================================


class InMemoryTransaction(StorageTransaction):
    """Working copy of the in-memory tables, applied on commit."""

    def __init__(
        self,
        entries: Dict[UUID, Entry],
        entry_keys: Dict[UUID, StoredEntryKey],
        now: datetime,
    ) -> None:
        self.entries = entries
        self.entry_keys = entry_keys
        self.now = now


def _active_entry(tx: InMemoryTransaction, entry_id: UUID) -> Entry:
    entry = tx.entries.get(entry_id)
    if entry is None:
        raise EntryNotFoundError(str(entry_id))
    if entry.meta.state(tx.now) is not EntryState.ACTIVE:
        raise EntryExpiredError(str(entry_id))
    return entry


def _remove_entry(tx: InMemoryTransaction, entry_id: UUID) -> bool:
    removed = tx.entries.pop(entry_id, None) is not None
    for key_id in [k for k, v in tx.entry_keys.items() if v.meta.entry_id == entry_id]:
        del tx.entry_keys[key_id]
    return removed


class InMemoryEntryStore(EntryStore):
    """Entry store over ``InMemoryTransaction`` working copies."""

    async def create(
        self,
        tx: InMemoryTransaction,
        entry_id: UUID,
        ciphertext: bytes,
        ttl: timedelta,
        max_reads: int,
        content_type: str = "text/plain",
    ) -> EntryMeta:
        if entry_id in tx.entries:
            raise CreateFailedError(f"Entry {entry_id} already exists")

        meta = EntryMeta(
            entry_id=entry_id,
            remaining_reads=max_reads,
            created_at=tx.now,
            expire_at=tx.now + ttl,
            content_type=content_type,
            delete_token=generate_token(),
        )
        tx.entries[entry_id] = Entry(meta=meta, ciphertext=ciphertext)
        return replace(meta)

    async def read_and_consume(self, tx: InMemoryTransaction, entry_id: UUID) -> Entry:
        entry = _active_entry(tx, entry_id)

        remaining = entry.meta.remaining_reads - 1
        meta = replace(entry.meta, remaining_reads=remaining, accessed_at=tx.now)
        if remaining <= 0:
            _remove_entry(tx, entry_id)
        else:
            tx.entries[entry_id] = replace(entry, meta=meta)

        return Entry(meta=replace(meta), ciphertext=entry.ciphertext)

    async def read_meta(
        self, tx: InMemoryTransaction, entry_id: UUID, for_update: bool = False
    ) -> EntryMeta:
        # The whole transaction holds the backend lock, so for_update is implied
        return replace(_active_entry(tx, entry_id).meta)

    async def verify_delete(
        self, tx: InMemoryTransaction, entry_id: UUID, token: str
    ) -> bool:
        entry = _active_entry(tx, entry_id)
        stored = entry.meta.delete_token or ""
        return constant_time_equal(stored.encode(), token.encode())

    async def delete(self, tx: InMemoryTransaction, entry_id: UUID) -> bool:
        return _remove_entry(tx, entry_id)

    async def delete_expired(self, tx: InMemoryTransaction) -> int:
        stale = [
            entry_id
            for entry_id, entry in tx.entries.items()
            if entry.meta.state(tx.now) is not EntryState.ACTIVE
        ]
        for entry_id in stale:
            _remove_entry(tx, entry_id)
        return len(stale)


class InMemoryEntryKeyStore(EntryKeyStore):
    """Entry key store over ``InMemoryTransaction`` working copies."""

    async def create_key(
        self,
        tx: InMemoryTransaction,
        entry_id: UUID,
        wrapped_dek: bytes,
        key_hash: bytes,
        ttl: Optional[timedelta] = None,
        max_reads: Optional[int] = None,
    ) -> EntryKeyMeta:
        if entry_id not in tx.entries:
            raise CreateFailedError(f"Entry {entry_id} does not exist")

        meta = EntryKeyMeta(
            entry_key_id=uuid4(),
            entry_id=entry_id,
            created_at=tx.now,
            expire_at=tx.now + ttl if ttl is not None else None,
            remaining_reads=max_reads,
        )
        tx.entry_keys[meta.entry_key_id] = StoredEntryKey(
            meta=meta, wrapped_dek=wrapped_dek, key_hash=key_hash
        )
        return replace(meta)

    def _usable(self, tx: InMemoryTransaction, entry_id: UUID) -> List[StoredEntryKey]:
        rows = [
            stored
            for stored in tx.entry_keys.values()
            if stored.meta.entry_id == entry_id and stored.meta.is_usable(tx.now)
        ]
        return sorted(rows, key=lambda stored: stored.meta.created_at)

    async def candidates(
        self, tx: InMemoryTransaction, entry_id: UUID
    ) -> List[StoredEntryKey]:
        return [
            replace(stored, meta=replace(stored.meta))
            for stored in self._usable(tx, entry_id)
        ]

    async def consume(self, tx: InMemoryTransaction, entry_key_id: UUID) -> EntryKeyMeta:
        stored = tx.entry_keys.get(entry_key_id)
        if stored is None:
            raise EntryKeyNotFoundError(str(entry_key_id))

        remaining = stored.meta.remaining_reads
        if remaining is not None:
            remaining -= 1
        meta = replace(stored.meta, remaining_reads=remaining, accessed_at=tx.now)

        expired = meta.expire_at is not None and tx.now >= meta.expire_at
        if expired or (remaining is not None and remaining <= 0):
            del tx.entry_keys[entry_key_id]
        else:
            tx.entry_keys[entry_key_id] = replace(stored, meta=meta)

        return replace(meta)

    async def list_active(
        self, tx: InMemoryTransaction, entry_id: UUID
    ) -> List[EntryKeyMeta]:
        return [replace(stored.meta) for stored in self._usable(tx, entry_id)]

    async def delete(self, tx: InMemoryTransaction, entry_key_id: UUID) -> bool:
        return tx.entry_keys.pop(entry_key_id, None) is not None

    async def delete_for_entry(self, tx: InMemoryTransaction, entry_id: UUID) -> int:
        doomed = [k for k, v in tx.entry_keys.items() if v.meta.entry_id == entry_id]
        for key_id in doomed:
            del tx.entry_keys[key_id]
        return len(doomed)

    async def delete_expired(self, tx: InMemoryTransaction) -> int:
        stale = [k for k, v in tx.entry_keys.items() if not v.meta.is_usable(tx.now)]
        for key_id in stale:
            del tx.entry_keys[key_id]
        return len(stale)


class InMemoryBackend(StorageBackend):
    """
    In-memory storage for tests and single-process use.

    A single asyncio.Lock is held for the whole transaction, which gives the
    same read-check-decrement atomicity the database gets from row locks.
    Rows are replaced, never mutated, so a shallow copy of the tables is a
    complete rollback point.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._entries: Dict[UUID, Entry] = {}
        self._entry_keys: Dict[UUID, StoredEntryKey] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._entry_store = InMemoryEntryStore()
        self._entry_key_store = InMemoryEntryKeyStore()

    @property
    def entries(self) -> InMemoryEntryStore:
        return self._entry_store

    @property
    def entry_keys(self) -> InMemoryEntryKeyStore:
        return self._entry_key_store

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransaction]:
        async with self._lock:
            tx = InMemoryTransaction(
                entries=dict(self._entries),
                entry_keys=dict(self._entry_keys),
                now=self._clock(),
            )
            yield tx
            self._entries = tx.entries
            self._entry_keys = tx.entry_keys

    def row_counts(self) -> Dict[str, int]:
        """Physical row counts, including rows that are logically gone."""
        return {"entries": len(self._entries), "entry_keys": len(self._entry_keys)}
