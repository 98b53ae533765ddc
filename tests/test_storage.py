"""
Tests for the entry and entry key stores.

Every test runs against the in-memory backend and, when DATABASE_URL is set,
against PostgreSQL.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from envelope_secrets import (
    CreateFailedError,
    EntryExpiredError,
    EntryKeyNotFoundError,
    EntryNotFoundError,
    EntryState,
    InMemoryBackend,
)

HOUR = timedelta(hours=1)


async def _create(backend, max_reads=3, ttl=HOUR, data=b"sealed"):
    entry_id = uuid4()
    async with backend.transaction() as tx:
        meta = await backend.entries.create(tx, entry_id, data, ttl, max_reads)
    return entry_id, meta


async def _add_key(backend, entry_id, ttl=None, max_reads=None, wrapped=b"wrapped"):
    async with backend.transaction() as tx:
        return await backend.entry_keys.create_key(
            tx, entry_id, wrapped, b"hash", ttl=ttl, max_reads=max_reads
        )


class TestEntryStore:
    async def test_create_and_read_meta(self, backend):
        entry_id, meta = await _create(backend, max_reads=2)

        assert meta.entry_id == entry_id
        assert meta.remaining_reads == 2
        assert meta.content_type == "text/plain"
        assert meta.expire_at > meta.created_at
        assert len(meta.delete_token) == 64

        async with backend.transaction() as tx:
            fetched = await backend.entries.read_meta(tx, entry_id)
        assert fetched.remaining_reads == 2
        assert fetched.state(fetched.created_at) is EntryState.ACTIVE

    async def test_duplicate_id_fails(self, backend):
        entry_id, _ = await _create(backend)

        with pytest.raises(CreateFailedError):
            async with backend.transaction() as tx:
                await backend.entries.create(tx, entry_id, b"again", HOUR, 1)

    async def test_consume_decrements_then_deletes(self, backend):
        entry_id, _ = await _create(backend, max_reads=2, data=b"payload")

        async with backend.transaction() as tx:
            first = await backend.entries.read_and_consume(tx, entry_id)
        assert first.ciphertext == b"payload"
        assert first.meta.remaining_reads == 1
        assert first.meta.accessed_at is not None

        async with backend.transaction() as tx:
            last = await backend.entries.read_and_consume(tx, entry_id)
        assert last.meta.remaining_reads == 0

        with pytest.raises(EntryNotFoundError):
            async with backend.transaction() as tx:
                await backend.entries.read_meta(tx, entry_id)

    async def test_negative_ttl_is_expired(self, backend):
        entry_id, _ = await _create(backend, ttl=timedelta(seconds=-1))

        with pytest.raises(EntryExpiredError):
            async with backend.transaction() as tx:
                await backend.entries.read_and_consume(tx, entry_id)
        with pytest.raises(EntryExpiredError):
            async with backend.transaction() as tx:
                await backend.entries.read_meta(tx, entry_id)

    async def test_missing_entry(self, backend):
        with pytest.raises(EntryNotFoundError):
            async with backend.transaction() as tx:
                await backend.entries.read_and_consume(tx, uuid4())

    async def test_verify_delete(self, backend):
        entry_id, meta = await _create(backend)

        async with backend.transaction() as tx:
            assert await backend.entries.verify_delete(tx, entry_id, meta.delete_token)
            assert not await backend.entries.verify_delete(tx, entry_id, "0" * 64)
            assert not await backend.entries.verify_delete(tx, entry_id, "")

        with pytest.raises(EntryNotFoundError):
            async with backend.transaction() as tx:
                await backend.entries.verify_delete(tx, uuid4(), meta.delete_token)

    async def test_delete_is_idempotent(self, backend):
        entry_id, _ = await _create(backend)

        async with backend.transaction() as tx:
            assert await backend.entries.delete(tx, entry_id)
        async with backend.transaction() as tx:
            assert not await backend.entries.delete(tx, entry_id)

    async def test_delete_expired_removes_only_stale_rows(self, backend):
        live_id, _ = await _create(backend)
        stale_id, _ = await _create(backend, ttl=timedelta(seconds=-1))

        async with backend.transaction() as tx:
            removed = await backend.entries.delete_expired(tx)
        assert removed >= 1

        async with backend.transaction() as tx:
            assert (await backend.entries.read_meta(tx, live_id)).entry_id == live_id
            assert not await backend.entries.delete(tx, stale_id)


class TestEntryKeyStore:
    async def test_create_key_requires_parent(self, backend):
        with pytest.raises(CreateFailedError):
            await _add_key(backend, uuid4())

    async def test_candidates_oldest_first(self, backend):
        entry_id, _ = await _create(backend)
        first = await _add_key(backend, entry_id, wrapped=b"first")
        second = await _add_key(backend, entry_id, max_reads=2, wrapped=b"second")

        async with backend.transaction() as tx:
            rows = await backend.entry_keys.candidates(tx, entry_id)

        assert [r.meta.entry_key_id for r in rows] == [
            first.entry_key_id,
            second.entry_key_id,
        ]
        assert rows[0].wrapped_dek == b"first"
        assert rows[0].key_hash == b"hash"
        assert rows[0].meta.remaining_reads is None
        assert rows[1].meta.remaining_reads == 2

    async def test_unlimited_key_survives_consume(self, backend):
        entry_id, _ = await _create(backend)
        key = await _add_key(backend, entry_id)

        async with backend.transaction() as tx:
            meta = await backend.entry_keys.consume(tx, key.entry_key_id)
        assert meta.remaining_reads is None
        assert meta.accessed_at is not None

        async with backend.transaction() as tx:
            assert len(await backend.entry_keys.list_active(tx, entry_id)) == 1

    async def test_counted_key_is_deleted_when_spent(self, backend):
        entry_id, _ = await _create(backend)
        key = await _add_key(backend, entry_id, max_reads=2)

        async with backend.transaction() as tx:
            meta = await backend.entry_keys.consume(tx, key.entry_key_id)
        assert meta.remaining_reads == 1
        async with backend.transaction() as tx:
            meta = await backend.entry_keys.consume(tx, key.entry_key_id)
        assert meta.remaining_reads == 0

        with pytest.raises(EntryKeyNotFoundError):
            async with backend.transaction() as tx:
                await backend.entry_keys.consume(tx, key.entry_key_id)

    async def test_expired_key_is_excluded_and_swept(self, backend):
        entry_id, _ = await _create(backend)
        live = await _add_key(backend, entry_id)
        await _add_key(backend, entry_id, ttl=timedelta(seconds=-1))

        async with backend.transaction() as tx:
            rows = await backend.entry_keys.candidates(tx, entry_id)
            listed = await backend.entry_keys.list_active(tx, entry_id)
        assert [r.meta.entry_key_id for r in rows] == [live.entry_key_id]
        assert [k.entry_key_id for k in listed] == [live.entry_key_id]

        async with backend.transaction() as tx:
            assert await backend.entry_keys.delete_expired(tx) >= 1

    async def test_entry_delete_cascades_to_keys(self, backend):
        entry_id, _ = await _create(backend)
        key = await _add_key(backend, entry_id)

        async with backend.transaction() as tx:
            await backend.entries.delete(tx, entry_id)

        async with backend.transaction() as tx:
            assert not await backend.entry_keys.delete(tx, key.entry_key_id)

    async def test_last_entry_read_cascades_to_keys(self, backend):
        entry_id, _ = await _create(backend, max_reads=1)
        key = await _add_key(backend, entry_id)

        async with backend.transaction() as tx:
            await backend.entries.read_and_consume(tx, entry_id)

        async with backend.transaction() as tx:
            assert await backend.entry_keys.list_active(tx, entry_id) == []
            assert not await backend.entry_keys.delete(tx, key.entry_key_id)

    async def test_delete_for_entry(self, backend):
        entry_id, _ = await _create(backend)
        await _add_key(backend, entry_id)
        await _add_key(backend, entry_id)

        async with backend.transaction() as tx:
            assert await backend.entry_keys.delete_for_entry(tx, entry_id) == 2
            assert await backend.entry_keys.list_active(tx, entry_id) == []


class TestTransactions:
    async def test_exception_rolls_back(self, backend):
        entry_id, _ = await _create(backend, max_reads=2)

        with pytest.raises(RuntimeError):
            async with backend.transaction() as tx:
                await backend.entries.read_and_consume(tx, entry_id)
                raise RuntimeError("boom")

        async with backend.transaction() as tx:
            assert (await backend.entries.read_meta(tx, entry_id)).remaining_reads == 2

    async def test_rolled_back_create_leaves_nothing(self, backend):
        entry_id = uuid4()

        with pytest.raises(CreateFailedError):
            async with backend.transaction() as tx:
                await backend.entries.create(tx, entry_id, b"x", HOUR, 1)
                await backend.entry_keys.create_key(tx, uuid4(), b"w", b"h")

        with pytest.raises(EntryNotFoundError):
            async with backend.transaction() as tx:
                await backend.entries.read_meta(tx, entry_id)

    async def test_cancellation_rolls_back(self, backend):
        entry_id, _ = await _create(backend, max_reads=2)
        consumed = asyncio.Event()

        async def consume_and_hang():
            async with backend.transaction() as tx:
                await backend.entries.read_and_consume(tx, entry_id)
                consumed.set()
                await asyncio.sleep(60)

        task = asyncio.create_task(consume_and_hang())
        await consumed.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        async with backend.transaction() as tx:
            assert (await backend.entries.read_meta(tx, entry_id)).remaining_reads == 2


class TestInMemoryClock:
    async def test_entry_expires_when_clock_passes_deadline(self, clocked_backend, clock):
        entry_id, meta = await _create(clocked_backend, ttl=timedelta(minutes=5))
        assert meta.created_at == clock.now

        clock.advance(minutes=4, seconds=59)
        async with clocked_backend.transaction() as tx:
            await clocked_backend.entries.read_meta(tx, entry_id)

        clock.advance(seconds=1)
        with pytest.raises(EntryExpiredError):
            async with clocked_backend.transaction() as tx:
                await clocked_backend.entries.read_meta(tx, entry_id)

    async def test_key_expires_independently(self, clocked_backend, clock):
        entry_id, _ = await _create(clocked_backend)
        await _add_key(clocked_backend, entry_id, ttl=timedelta(minutes=1))

        clock.advance(minutes=2)
        async with clocked_backend.transaction() as tx:
            assert await clocked_backend.entry_keys.candidates(tx, entry_id) == []
            await clocked_backend.entries.read_meta(tx, entry_id)

    async def test_sweep_reclaims_rows(self, clocked_backend, clock):
        entry_id, _ = await _create(clocked_backend, ttl=timedelta(minutes=1))
        await _add_key(clocked_backend, entry_id)
        assert clocked_backend.row_counts() == {"entries": 1, "entry_keys": 1}

        clock.advance(minutes=1)
        async with clocked_backend.transaction() as tx:
            assert await clocked_backend.entries.delete_expired(tx) == 1

        assert clocked_backend.row_counts() == {"entries": 0, "entry_keys": 0}

    async def test_transactions_are_serialized(self):
        backend = InMemoryBackend()
        entry_id, _ = await _create(backend, max_reads=5)

        async def read_once():
            async with backend.transaction() as tx:
                meta = await backend.entries.read_meta(tx, entry_id)
                await asyncio.sleep(0)
                await backend.entries.read_and_consume(tx, entry_id)
                return meta.remaining_reads

        seen = await asyncio.gather(*(read_once() for _ in range(5)))

        assert sorted(seen) == [1, 2, 3, 4, 5]
