"""
Secret manager: envelope encryption over consumption-limited storage.

This module provides:
- SecretManager: Main API (create, read, mint key, delete, sweep)
- CreatedSecret, Secret, MintedKey, SweepResult: Operation results

Key hierarchy:
- KEK (random, never stored) -> handed to the caller as the access key
- DEK (random, stored only wrapped under each KEK) -> encrypts the payload
- One entry owns one DEK and any number of wrapped copies (entry keys), each
  with its own optional expiry and read budget

Every operation runs in a single storage transaction. A read locks the entry
row, finds the entry key whose KEK unwraps to a DEK matching the stored
hash, then spends one read from the key and one from the entry before
decrypting. Anything that fails before commit leaves no trace.

Error policy:
- Absent, expired and exhausted secrets all surface as a bare NotFoundError
- Malformed keys, wrong keys and integrity failures surface as InvalidKeyError
- Storage problems surface as StorageUnavailableError (retryable by the caller)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import List, Optional, Tuple
from uuid import UUID, uuid4

from .config import SecretStoreConfig
from .crypto import AesGcmCipher, KeyHasher, SecureKey
from .errors import (
    CryptoError,
    EntryExpiredError,
    InvalidKeyError,
    InvalidParameterError,
    KeyInvalidError,
    NotFoundError,
    StorageError,
    UnauthorizedError,
)
from .key_wrapper import AesKeyWrapper
from .keys import decode_key, encode_key
from .storage import (
    EntryKeyMeta,
    EntryMeta,
    InMemoryBackend,
    StorageBackend,
    StorageTransaction,
    StoredEntryKey,
)

logger = logging.getLogger("envelope_secrets.manager")

_NOT_FOUND = "Secret not found"
_INVALID_KEY = "Invalid key"


@dataclass
class CreatedSecret:
    """Result of create_secret. ``meta.delete_token`` is only ever returned here."""

    entry_id: UUID
    key: str = field(repr=False)
    meta: EntryMeta


@dataclass
class Secret:
    """Result of read_secret."""

    plaintext: bytes = field(repr=False)
    meta: EntryMeta

    @property
    def content_type(self) -> str:
        return self.meta.content_type


@dataclass
class MintedKey:
    """Result of mint_additional_key."""

    entry_key: EntryKeyMeta
    key: str = field(repr=False)


@dataclass
class SweepResult:
    """Result of delete_expired."""

    entries_deleted: int
    keys_deleted: int


def _public(meta: EntryMeta) -> EntryMeta:
    return replace(meta, delete_token=None)


class SecretManager:
    """
    Envelope-encrypted, consumption-limited secret store.

    Safe to call concurrently from any number of tasks or processes sharing
    one backend; the backend's transactions are the only serialization point.
    """

    def __init__(
        self,
        backend: StorageBackend,
        config: Optional[SecretStoreConfig] = None,
        wrapper: Optional[AesKeyWrapper] = None,
        hasher: Optional[KeyHasher] = None,
    ) -> None:
        """
        Initialize manager with a storage backend.

        Args:
            backend: StorageBackend instance
            config: Limits and key encoding (defaults when omitted)
            wrapper: DEK wrapper (AES-256-GCM when omitted)
            hasher: DEK integrity hasher (built from config when omitted)
        """
        self._backend = backend
        self._config = config or SecretStoreConfig()
        self._wrapper = wrapper or AesKeyWrapper()
        self._hasher = hasher or KeyHasher(self._config.integrity_key)

    @classmethod
    async def new(cls, config: Optional[SecretStoreConfig] = None) -> SecretManager:
        """
        Build a manager from configuration (async factory method).

        Uses PostgreSQL when ``config.database_url`` is set, otherwise an
        in-memory backend.
        """
        config = config or SecretStoreConfig.from_env()
        if config.database_url:
            from .postgres_storage import PostgresBackend

            backend = await PostgresBackend.connect(config.database_url)
            await backend.create_schema()
        else:
            logger.warning("DATABASE_URL not set, secrets are kept in memory only")
            backend = InMemoryBackend()
        return cls(backend, config)

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def config(self) -> SecretStoreConfig:
        return self._config

    async def close(self) -> None:
        await self._backend.close()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def create_secret(
        self,
        plaintext: bytes,
        ttl: Optional[timedelta] = None,
        max_reads: int = 1,
        content_type: str = "text/plain",
    ) -> CreatedSecret:
        """
        Encrypt and store a secret.

        Flow:
        1. Generate DEK, seal the payload with it
        2. Insert the entry (fresh delete token)
        3. Wrap the DEK under a fresh KEK, insert the first entry key with the
           entry's ttl and read budget
        All inside one transaction.

        Args:
            plaintext: Secret bytes
            ttl: Time to live (config default when omitted; may be negative)
            max_reads: Read budget, at least 1
            content_type: Label returned with the plaintext on read

        Returns:
            CreatedSecret with entry id, access key string and metadata
        """
        if len(plaintext) > self._config.max_data_size:
            raise InvalidParameterError(
                f"Secret exceeds {self._config.max_data_size} bytes"
            )
        if max_reads is None:
            raise InvalidParameterError("max_reads is required")
        ttl = self._config.default_ttl if ttl is None else ttl
        self._check_bounds(ttl, max_reads)

        entry_id = uuid4()
        dek = SecureKey.generate()
        sealed = AesGcmCipher.encrypt(dek, plaintext)

        async with self._backend.transaction() as tx:
            meta = await self._backend.entries.create(
                tx, entry_id, sealed, ttl, max_reads, content_type
            )
            wrapped, kek = self._wrapper.wrap(dek)
            await self._backend.entry_keys.create_key(
                tx,
                entry_id,
                wrapped,
                self._hasher.hash(dek.as_bytes()),
                ttl=ttl,
                max_reads=max_reads,
            )

        logger.info("Created entry %s (max_reads=%d)", entry_id, max_reads)
        return CreatedSecret(
            entry_id=entry_id,
            key=encode_key(kek, self._config.key_encoding),
            meta=meta,
        )

    async def read_secret(self, entry_id: UUID, key: str) -> Secret:
        """
        Decrypt a secret, spending one read from the entry and from the key used.

        Raises:
            InvalidKeyError: If ``key`` is malformed or unlocks no entry key
            NotFoundError: If the secret is absent, expired or exhausted
        """
        kek = self._parse_key(key)

        try:
            async with self._backend.transaction() as tx:
                await self._backend.entries.read_meta(tx, entry_id, for_update=True)
                dek, stored = await self._find_key(tx, entry_id, kek)

                # Key first: the entry delete below cascades to its keys
                await self._backend.entry_keys.consume(tx, stored.meta.entry_key_id)
                entry = await self._backend.entries.read_and_consume(tx, entry_id)

                try:
                    plaintext = AesGcmCipher.decrypt(dek, entry.ciphertext)
                except CryptoError:
                    logger.error("Payload of entry %s failed authentication", entry_id)
                    raise InvalidKeyError(_INVALID_KEY) from None
        except EntryExpiredError:
            await self._discard(entry_id)
            raise NotFoundError(_NOT_FOUND) from None
        except NotFoundError:
            raise NotFoundError(_NOT_FOUND) from None

        logger.debug(
            "Read entry %s (remaining_reads=%d)", entry_id, entry.meta.remaining_reads
        )
        return Secret(plaintext=plaintext, meta=_public(entry.meta))

    async def mint_additional_key(
        self,
        entry_id: UUID,
        existing_key: str,
        ttl: Optional[timedelta] = None,
        max_reads: Optional[int] = None,
    ) -> MintedKey:
        """
        Issue another access key for the same secret.

        ``existing_key`` must be valid; presenting it does not spend a read.
        The new key wraps the same DEK and carries its own optional bounds; the
        entry's own expiry and read budget still apply to it.
        """
        self._check_bounds(ttl, max_reads)
        kek = self._parse_key(existing_key)

        try:
            async with self._backend.transaction() as tx:
                await self._backend.entries.read_meta(tx, entry_id, for_update=True)
                dek, _ = await self._find_key(tx, entry_id, kek)
                wrapped, new_kek = self._wrapper.wrap(dek)
                entry_key = await self._backend.entry_keys.create_key(
                    tx,
                    entry_id,
                    wrapped,
                    self._hasher.hash(dek.as_bytes()),
                    ttl=ttl,
                    max_reads=max_reads,
                )
        except EntryExpiredError:
            await self._discard(entry_id)
            raise NotFoundError(_NOT_FOUND) from None
        except NotFoundError:
            raise NotFoundError(_NOT_FOUND) from None

        logger.info("Minted key %s for entry %s", entry_key.entry_key_id, entry_id)
        return MintedKey(
            entry_key=entry_key,
            key=encode_key(new_kek, self._config.key_encoding),
        )

    async def delete_secret(self, entry_id: UUID, delete_token: str) -> None:
        """
        Delete a secret and all of its keys.

        Raises:
            UnauthorizedError: If ``delete_token`` does not match
            NotFoundError: If the secret is already gone
        """
        try:
            async with self._backend.transaction() as tx:
                await self._authorize(tx, entry_id, delete_token)
                await self._backend.entries.delete(tx, entry_id)
        except EntryExpiredError:
            await self._discard(entry_id)
            raise NotFoundError(_NOT_FOUND) from None
        except NotFoundError:
            raise NotFoundError(_NOT_FOUND) from None

        logger.info("Deleted entry %s", entry_id)

    async def get_secret_meta(self, entry_id: UUID) -> EntryMeta:
        """Status of a secret without spending a read. The delete token is stripped."""
        try:
            async with self._backend.transaction() as tx:
                meta = await self._backend.entries.read_meta(tx, entry_id)
        except EntryExpiredError:
            await self._discard(entry_id)
            raise NotFoundError(_NOT_FOUND) from None
        except NotFoundError:
            raise NotFoundError(_NOT_FOUND) from None
        return _public(meta)

    async def list_keys(self, entry_id: UUID, delete_token: str) -> List[EntryKeyMeta]:
        """Usable entry keys of a secret; requires the delete token."""
        try:
            async with self._backend.transaction() as tx:
                await self._authorize(tx, entry_id, delete_token)
                return await self._backend.entry_keys.list_active(tx, entry_id)
        except EntryExpiredError:
            await self._discard(entry_id)
            raise NotFoundError(_NOT_FOUND) from None
        except NotFoundError:
            raise NotFoundError(_NOT_FOUND) from None

    async def revoke_key(
        self, entry_id: UUID, delete_token: str, entry_key_id: UUID
    ) -> bool:
        """
        Delete one entry key; requires the delete token.

        Returns:
            True if the key existed and was removed
        """
        try:
            async with self._backend.transaction() as tx:
                await self._authorize(tx, entry_id, delete_token)
                owned = await self._backend.entry_keys.list_active(tx, entry_id)
                if entry_key_id not in {k.entry_key_id for k in owned}:
                    return False
                removed = await self._backend.entry_keys.delete(tx, entry_key_id)
        except EntryExpiredError:
            await self._discard(entry_id)
            raise NotFoundError(_NOT_FOUND) from None
        except NotFoundError:
            raise NotFoundError(_NOT_FOUND) from None

        logger.info("Revoked key %s of entry %s", entry_key_id, entry_id)
        return removed

    async def delete_expired(self) -> SweepResult:
        """
        Remove expired and exhausted entries and keys.

        Entries go first so the deletion order (entry, then its keys) matches
        the read path's lock order.
        """
        async with self._backend.transaction() as tx:
            entries_deleted = await self._backend.entries.delete_expired(tx)
            keys_deleted = await self._backend.entry_keys.delete_expired(tx)

        if entries_deleted or keys_deleted:
            logger.info(
                "Swept %d entries and %d keys", entries_deleted, keys_deleted
            )
        return SweepResult(entries_deleted=entries_deleted, keys_deleted=keys_deleted)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_bounds(self, ttl: Optional[timedelta], max_reads: Optional[int]) -> None:
        if max_reads is not None and max_reads < 1:
            raise InvalidParameterError("max_reads must be at least 1")
        if ttl is not None and ttl > self._config.max_ttl:
            raise InvalidParameterError(
                f"ttl exceeds the maximum of {self._config.max_ttl_seconds}s"
            )

    @staticmethod
    def _parse_key(key: str) -> SecureKey:
        try:
            return decode_key(key)
        except KeyInvalidError:
            raise InvalidKeyError(_INVALID_KEY) from None

    async def _find_key(
        self, tx: StorageTransaction, entry_id: UUID, kek: SecureKey
    ) -> Tuple[SecureKey, StoredEntryKey]:
        """Return the DEK and the entry key row that ``kek`` unlocks."""
        for stored in await self._backend.entry_keys.candidates(tx, entry_id):
            try:
                dek = self._wrapper.unwrap(kek, stored.wrapped_dek)
            except CryptoError:
                continue
            if self._hasher.compare(dek.as_bytes(), stored.key_hash):
                return dek, stored
        raise InvalidKeyError(_INVALID_KEY)

    async def _authorize(
        self, tx: StorageTransaction, entry_id: UUID, delete_token: str
    ) -> None:
        if not await self._backend.entries.verify_delete(tx, entry_id, delete_token):
            raise UnauthorizedError("Delete token mismatch")

    async def _discard(self, entry_id: UUID) -> None:
        """Best-effort removal of an entry that is logically gone."""
        try:
            async with self._backend.transaction() as tx:
                try:
                    await self._backend.entries.read_meta(tx, entry_id, for_update=True)
                except EntryExpiredError:
                    await self._backend.entries.delete(tx, entry_id)
                except NotFoundError:
                    pass
        except StorageError as e:
            logger.warning("Lazy cleanup of entry %s failed: %s", entry_id, e)
