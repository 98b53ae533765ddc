"""
PostgreSQL storage backend for entries and entry keys.

This module provides:
- PostgresBackend: asyncpg pool backed StorageBackend
- PostgresEntryStore / PostgresEntryKeyStore: SQL implementations of the stores
- SCHEMA: DDL for the ``entries`` and ``entry_key`` tables

Concurrency:
- One pooled connection per transaction, READ COMMITTED isolation
- Reads that can lead to a mutation take ``SELECT ... FOR UPDATE`` row locks
- Lock order is always entry row first, then its key rows; cascading deletes
  follow the same order
- Timestamps come from the database clock (``NOW()``), which is fixed for the
  duration of a transaction
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, List, Optional
from uuid import UUID, uuid4

import asyncpg

from .crypto import constant_time_equal
from .errors import (
    CreateFailedError,
    EntryExpiredError,
    EntryKeyNotFoundError,
    EntryNotFoundError,
    StorageUnavailableError,
)
from .keys import generate_token
from .storage import (
    Entry,
    EntryKeyMeta,
    EntryKeyStore,
    EntryMeta,
    EntryStore,
    StorageBackend,
    StorageTransaction,
    StoredEntryKey,
)

logger = logging.getLogger("envelope_secrets.postgres")

# Errors that mean "the database could not do it right now"
_TRANSIENT_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    TimeoutError,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    uuid UUID PRIMARY KEY,
    data BYTEA NOT NULL,
    content_type TEXT NOT NULL DEFAULT 'text/plain',
    remaining_reads INTEGER NOT NULL DEFAULT 1,
    delete_key TEXT NOT NULL,
    created TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    accessed TIMESTAMPTZ,
    expire TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS entries_expire_idx ON entries (expire);

CREATE TABLE IF NOT EXISTS entry_key (
    uuid UUID PRIMARY KEY,
    entry_uuid UUID NOT NULL REFERENCES entries (uuid) ON DELETE CASCADE,
    encrypted_key BYTEA NOT NULL,
    key_hash BYTEA NOT NULL,
    created TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expire TIMESTAMPTZ DEFAULT NULL,
    remaining_reads INTEGER DEFAULT NULL,
    accessed TIMESTAMPTZ DEFAULT NULL
);

CREATE INDEX IF NOT EXISTS entry_key_entry_uuid_idx ON entry_key (entry_uuid);
"""

_ENTRY_COLUMNS = """
    uuid, remaining_reads, delete_key, created, accessed, expire, content_type,
    (remaining_reads > 0 AND expire > NOW()) AS active
"""

_KEY_COLUMNS = "uuid, entry_uuid, created, expire, remaining_reads, accessed"

_KEY_USABLE = """
    (expire IS NULL OR expire > NOW())
    AND (remaining_reads IS NULL OR remaining_reads > 0)
"""


class PostgresTransaction(StorageTransaction):
    """An asyncpg connection with an open transaction."""

    def __init__(self, connection: asyncpg.Connection) -> None:
        self.connection = connection


def _row_to_entry_meta(row: asyncpg.Record) -> EntryMeta:
    """Convert database row to EntryMeta."""
    return EntryMeta(
        entry_id=row["uuid"],
        remaining_reads=row["remaining_reads"],
        created_at=row["created"],
        expire_at=row["expire"],
        content_type=row["content_type"],
        accessed_at=row["accessed"],
        delete_token=row["delete_key"],
    )


def _row_to_entry_key_meta(row: asyncpg.Record) -> EntryKeyMeta:
    """Convert database row to EntryKeyMeta."""
    return EntryKeyMeta(
        entry_key_id=row["uuid"],
        entry_id=row["entry_uuid"],
        created_at=row["created"],
        expire_at=row["expire"],
        remaining_reads=row["remaining_reads"],
        accessed_at=row["accessed"],
    )


class PostgresEntryStore(EntryStore):
    """Entry operations against the ``entries`` table."""

    async def create(
        self,
        tx: PostgresTransaction,
        entry_id: UUID,
        ciphertext: bytes,
        ttl: timedelta,
        max_reads: int,
        content_type: str = "text/plain",
    ) -> EntryMeta:
        query = """
            INSERT INTO entries (uuid, data, created, expire, remaining_reads,
                                 delete_key, content_type)
            VALUES ($1, $2, NOW(), NOW() + $3::interval, $4, $5, $6)
            RETURNING uuid, remaining_reads, delete_key, created, accessed,
                      expire, content_type
        """
        try:
            row = await tx.connection.fetchrow(
                query,
                entry_id,
                ciphertext,
                ttl,
                max_reads,
                generate_token(),
                content_type,
            )
        except asyncpg.UniqueViolationError:
            raise CreateFailedError(f"Entry {entry_id} already exists")
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to create entry: {e}") from e

        if row is None:
            raise CreateFailedError(f"Entry {entry_id} was not written")
        return _row_to_entry_meta(row)

    async def _fetch(
        self, tx: PostgresTransaction, entry_id: UUID, for_update: bool, data: bool = False
    ) -> asyncpg.Record:
        columns = _ENTRY_COLUMNS + (", data" if data else "")
        query = f"SELECT {columns} FROM entries WHERE uuid = $1"
        if for_update:
            query += " FOR UPDATE"
        try:
            row = await tx.connection.fetchrow(query, entry_id)
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to read entry: {e}") from e

        if row is None:
            raise EntryNotFoundError(str(entry_id))
        if not row["active"]:
            raise EntryExpiredError(str(entry_id))
        return row

    async def read_and_consume(self, tx: PostgresTransaction, entry_id: UUID) -> Entry:
        row = await self._fetch(tx, entry_id, for_update=True, data=True)
        ciphertext = bytes(row["data"])
        remaining = row["remaining_reads"] - 1

        try:
            if remaining <= 0:
                await tx.connection.execute("DELETE FROM entries WHERE uuid = $1", entry_id)
                accessed = await tx.connection.fetchval("SELECT NOW()")
            else:
                accessed = await tx.connection.fetchval(
                    """
                    UPDATE entries SET remaining_reads = $2, accessed = NOW()
                    WHERE uuid = $1
                    RETURNING accessed
                    """,
                    entry_id,
                    remaining,
                )
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to consume entry: {e}") from e

        meta = _row_to_entry_meta(row)
        meta.remaining_reads = remaining
        meta.accessed_at = accessed
        return Entry(meta=meta, ciphertext=ciphertext)

    async def read_meta(
        self, tx: PostgresTransaction, entry_id: UUID, for_update: bool = False
    ) -> EntryMeta:
        row = await self._fetch(tx, entry_id, for_update=for_update)
        return _row_to_entry_meta(row)

    async def verify_delete(
        self, tx: PostgresTransaction, entry_id: UUID, token: str
    ) -> bool:
        row = await self._fetch(tx, entry_id, for_update=True)
        stored = row["delete_key"].strip()
        return constant_time_equal(stored.encode(), token.encode())

    async def delete(self, tx: PostgresTransaction, entry_id: UUID) -> bool:
        try:
            result = await tx.connection.execute(
                "DELETE FROM entries WHERE uuid = $1", entry_id
            )
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to delete entry: {e}") from e
        return _affected(result) > 0

    async def delete_expired(self, tx: PostgresTransaction) -> int:
        try:
            result = await tx.connection.execute(
                "DELETE FROM entries WHERE expire <= NOW() OR remaining_reads <= 0"
            )
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to delete expired entries: {e}") from e
        return _affected(result)


class PostgresEntryKeyStore(EntryKeyStore):
    """Entry key operations against the ``entry_key`` table."""

    async def create_key(
        self,
        tx: PostgresTransaction,
        entry_id: UUID,
        wrapped_dek: bytes,
        key_hash: bytes,
        ttl: Optional[timedelta] = None,
        max_reads: Optional[int] = None,
    ) -> EntryKeyMeta:
        # NOW() + NULL is NULL, so an unset ttl leaves expire unset
        query = f"""
            INSERT INTO entry_key (uuid, entry_uuid, encrypted_key, key_hash,
                                   created, expire, remaining_reads)
            VALUES ($1, $2, $3, $4, NOW(), NOW() + $5::interval, $6)
            RETURNING {_KEY_COLUMNS}
        """
        try:
            row = await tx.connection.fetchrow(
                query, uuid4(), entry_id, wrapped_dek, key_hash, ttl, max_reads
            )
        except asyncpg.ForeignKeyViolationError:
            raise CreateFailedError(f"Entry {entry_id} does not exist")
        except asyncpg.UniqueViolationError:
            raise CreateFailedError("Entry key id collision")
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to create entry key: {e}") from e

        if row is None:
            raise CreateFailedError("Entry key was not written")
        return _row_to_entry_key_meta(row)

    async def candidates(
        self, tx: PostgresTransaction, entry_id: UUID
    ) -> List[StoredEntryKey]:
        query = f"""
            SELECT {_KEY_COLUMNS}, encrypted_key, key_hash
            FROM entry_key
            WHERE entry_uuid = $1 AND {_KEY_USABLE}
            ORDER BY created, uuid
            FOR UPDATE
        """
        try:
            rows = await tx.connection.fetch(query, entry_id)
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to read entry keys: {e}") from e

        return [
            StoredEntryKey(
                meta=_row_to_entry_key_meta(row),
                wrapped_dek=bytes(row["encrypted_key"]),
                key_hash=bytes(row["key_hash"]),
            )
            for row in rows
        ]

    async def consume(self, tx: PostgresTransaction, entry_key_id: UUID) -> EntryKeyMeta:
        try:
            row = await tx.connection.fetchrow(
                f"""
                SELECT {_KEY_COLUMNS}, (expire IS NOT NULL AND expire <= NOW()) AS expired
                FROM entry_key WHERE uuid = $1 FOR UPDATE
                """,
                entry_key_id,
            )
            if row is None:
                raise EntryKeyNotFoundError(str(entry_key_id))

            meta = _row_to_entry_key_meta(row)
            if meta.remaining_reads is not None:
                meta.remaining_reads -= 1

            spent = meta.remaining_reads is not None and meta.remaining_reads <= 0
            if row["expired"] or spent:
                await tx.connection.execute(
                    "DELETE FROM entry_key WHERE uuid = $1", entry_key_id
                )
                meta.accessed_at = await tx.connection.fetchval("SELECT NOW()")
            else:
                meta.accessed_at = await tx.connection.fetchval(
                    """
                    UPDATE entry_key SET remaining_reads = $2, accessed = NOW()
                    WHERE uuid = $1
                    RETURNING accessed
                    """,
                    entry_key_id,
                    meta.remaining_reads,
                )
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to consume entry key: {e}") from e

        return meta

    async def list_active(
        self, tx: PostgresTransaction, entry_id: UUID
    ) -> List[EntryKeyMeta]:
        query = f"""
            SELECT {_KEY_COLUMNS} FROM entry_key
            WHERE entry_uuid = $1 AND {_KEY_USABLE}
            ORDER BY created, uuid
        """
        try:
            rows = await tx.connection.fetch(query, entry_id)
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to list entry keys: {e}") from e
        return [_row_to_entry_key_meta(row) for row in rows]

    async def delete(self, tx: PostgresTransaction, entry_key_id: UUID) -> bool:
        try:
            result = await tx.connection.execute(
                "DELETE FROM entry_key WHERE uuid = $1", entry_key_id
            )
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to delete entry key: {e}") from e
        return _affected(result) > 0

    async def delete_for_entry(self, tx: PostgresTransaction, entry_id: UUID) -> int:
        try:
            result = await tx.connection.execute(
                "DELETE FROM entry_key WHERE entry_uuid = $1", entry_id
            )
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to delete entry keys: {e}") from e
        return _affected(result)

    async def delete_expired(self, tx: PostgresTransaction) -> int:
        try:
            result = await tx.connection.execute(
                """
                DELETE FROM entry_key
                WHERE expire <= NOW() OR remaining_reads <= 0
                """
            )
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to delete expired entry keys: {e}") from e
        return _affected(result)


def _affected(status: str) -> int:
    """Row count from a command status such as ``DELETE 3``."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class PostgresBackend(StorageBackend):
    """
    PostgreSQL storage backend.

    Requires the tables in ``SCHEMA``; ``create_schema()`` creates them.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool
        self._entry_store = PostgresEntryStore()
        self._entry_key_store = PostgresEntryKeyStore()

    @classmethod
    async def connect(cls, dsn: str, **pool_options) -> PostgresBackend:
        """Create a pool for ``dsn`` and wrap it."""
        try:
            pool = await asyncpg.create_pool(dsn, **pool_options)
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to connect: {e}") from e
        if pool is None:
            raise StorageUnavailableError("Failed to create connection pool")
        return cls(pool)

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    @property
    def entries(self) -> PostgresEntryStore:
        return self._entry_store

    @property
    def entry_keys(self) -> PostgresEntryKeyStore:
        return self._entry_key_store

    async def create_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        try:
            await self._pool.execute(SCHEMA)
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to create schema: {e}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTransaction]:
        try:
            connection = await self._pool.acquire()
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(f"Failed to acquire connection: {e}") from e

        try:
            tx = connection.transaction(isolation="read_committed")
            try:
                await tx.start()
            except _TRANSIENT_ERRORS as e:
                raise StorageUnavailableError(f"Failed to begin transaction: {e}") from e

            try:
                yield PostgresTransaction(connection)
            except BaseException:
                try:
                    await tx.rollback()
                except _TRANSIENT_ERRORS as e:
                    logger.warning("Rollback failed: %s", e)
                raise

            try:
                await tx.commit()
            except _TRANSIENT_ERRORS as e:
                raise StorageUnavailableError(f"Failed to commit: {e}") from e
        finally:
            await self._pool.release(connection)

    async def close(self) -> None:
        await self._pool.close()
