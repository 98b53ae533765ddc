"""
Envelope Secrets

Store a secret once, let it be read a bounded number of times before a
deadline, then make it unrecoverable.

Quick Start
-----------
```python
import asyncio
from datetime import timedelta
from envelope_secrets import PostgresBackend, SecretManager

async def main():
    backend = await PostgresBackend.connect("postgresql://localhost/secrets")
    await backend.create_schema()
    manager = SecretManager(backend)

    # Store a secret readable twice within one hour
    created = await manager.create_secret(
        b"Sensitive data", ttl=timedelta(hours=1), max_reads=2
    )

    # Share a second, single-use key for the same secret
    extra = await manager.mint_additional_key(
        created.entry_id, created.key, max_reads=1
    )

    secret = await manager.read_secret(created.entry_id, extra.key)
    print(secret.plaintext)

    await manager.delete_secret(created.entry_id, created.meta.delete_token)
    await manager.close()

asyncio.run(main())
```

Key Features
------------
- **AES-256-GCM**: Payload sealed under a per-secret DEK
- **Envelope keys**: The DEK is wrapped under any number of KEKs, each an
  independently expiring, independently counted access key
- **Consumption limits**: Reads decrement entry and key budgets atomically
- **Uniform not-found**: Absent, expired and exhausted look the same
- **PostgreSQL Storage**: Row-locked transactions; in-memory backend for tests
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    EncryptedData,
    KeyHasher,
    SecureKey,
    generate_random_bytes,
)
from .key_wrapper import AesKeyWrapper
from .keys import KeyEncoding, decode_key, encode_key, generate_token

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    AuthenticationFailedError,
    ConfigError,
    CreateFailedError,
    CryptoError,
    EntryExpiredError,
    EntryKeyNotFoundError,
    EntryNotFoundError,
    InvalidKeyError,
    InvalidParameterError,
    KeyInvalidError,
    NotFoundError,
    SecretStoreError,
    StorageError,
    StorageUnavailableError,
    UnauthorizedError,
)

# =============================================================================
# Storage Exports
# =============================================================================

from .storage import (
    Entry,
    EntryKeyMeta,
    EntryKeyStore,
    EntryMeta,
    EntryState,
    EntryStore,
    InMemoryBackend,
    StorageBackend,
    StoredEntryKey,
)
from .postgres_storage import PostgresBackend

# =============================================================================
# Manager Exports (Primary API)
# =============================================================================

from .config import SecretStoreConfig
from .manager import CreatedSecret, MintedKey, Secret, SecretManager, SweepResult
from .sweeper import ExpirySweeper

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "EncryptedData",
    "KeyHasher",
    "SecureKey",
    "generate_random_bytes",
    "AesKeyWrapper",
    "KeyEncoding",
    "decode_key",
    "encode_key",
    "generate_token",
    # Errors
    "SecretStoreError",
    "CryptoError",
    "KeyInvalidError",
    "AuthenticationFailedError",
    "InvalidKeyError",
    "NotFoundError",
    "EntryNotFoundError",
    "EntryExpiredError",
    "EntryKeyNotFoundError",
    "UnauthorizedError",
    "StorageError",
    "CreateFailedError",
    "StorageUnavailableError",
    "InvalidParameterError",
    "ConfigError",
    # Storage
    "StorageBackend",
    "EntryStore",
    "EntryKeyStore",
    "InMemoryBackend",
    "PostgresBackend",
    "EntryState",
    "EntryMeta",
    "Entry",
    "EntryKeyMeta",
    "StoredEntryKey",
    # Manager (Primary API)
    "SecretStoreConfig",
    "SecretManager",
    "CreatedSecret",
    "Secret",
    "MintedKey",
    "SweepResult",
    "ExpirySweeper",
]
