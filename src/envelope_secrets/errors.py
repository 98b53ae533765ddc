"""
Exception classes for the consumption-limited secret store.

Storage layers raise the specific subclasses (``EntryNotFoundError``,
``EntryExpiredError``, ...). ``SecretManager`` collapses every "unavailable"
reason into a bare ``NotFoundError`` before it reaches the caller.
"""

from __future__ import annotations


class SecretStoreError(Exception):
    """Base exception for all secret store operations."""

    pass


class CryptoError(SecretStoreError):
    """Cryptographic operation failed (encryption, decryption, key generation)."""

    pass


class KeyInvalidError(CryptoError):
    """Key material is malformed (wrong length or encoding)."""

    pass


class AuthenticationFailedError(CryptoError):
    """Authenticated decryption failed (tampered data or wrong key)."""

    pass


class InvalidKeyError(SecretStoreError):
    """The presented access key does not unlock the secret."""

    pass


class NotFoundError(SecretStoreError):
    """Secret is absent, expired or exhausted."""

    pass


class EntryNotFoundError(NotFoundError):
    """Entry row does not exist."""

    pass


class EntryExpiredError(NotFoundError):
    """Entry row exists but is past its expiry or out of reads."""

    pass


class EntryKeyNotFoundError(NotFoundError):
    """Entry key row does not exist or is outside its own bounds."""

    pass


class UnauthorizedError(SecretStoreError):
    """Delete token does not match."""

    pass


class StorageError(SecretStoreError):
    """Storage backend error (database, in-memory, etc.)."""

    pass


class CreateFailedError(StorageError):
    """Insert failed: id collision, missing parent or no row written."""

    pass


class StorageUnavailableError(StorageError):
    """Transient storage failure; the caller may retry."""

    pass


class InvalidParameterError(SecretStoreError, ValueError):
    """Requested TTL, read count or payload size is out of bounds."""

    pass


class ConfigError(SecretStoreError):
    """Configuration error."""

    pass
