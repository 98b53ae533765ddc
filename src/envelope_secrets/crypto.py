"""
Sealing primitives shared by payloads and wrapped keys.

- SecureKey: holder for DEK and KEK material, zeroed when collected
- EncryptedData: a sealed blob split into its nonce and the rest
- AesGcmCipher: seal and open blobs with AES-256-GCM
- KeyHasher: digest stored next to each wrapped DEK
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import constant_time, hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailedError, CryptoError, KeyInvalidError

AES_256_KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
DIGEST_SIZE = 32

_DECRYPT_FAILED = "Decryption failed"


class SecureKey:
    """
    DEK or KEK material for the duration of one operation.

    The bytes live in a bytearray that is overwritten with zeros when the
    object is collected. CPython gives no timing guarantee for that, and
    ``as_bytes()`` copies are not covered.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise KeyInvalidError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Fresh random AES-256 key."""
        return cls(generate_random_bytes(AES_256_KEY_SIZE))

    def as_bytes(self) -> bytes:
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __repr__(self) -> str:
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        material = getattr(self, "_bytes", None)
        if material is not None:
            material[:] = bytes(len(material))


@dataclass
class EncryptedData:
    """A sealed blob: ``nonce`` plus ``sealed`` (ciphertext with its GCM tag)."""

    nonce: bytes
    sealed: bytes

    def to_blob(self) -> bytes:
        return b"".join((self.nonce, self.sealed))

    @classmethod
    def from_blob(cls, blob: bytes) -> EncryptedData:
        """
        Split a stored blob.

        Raises:
            AuthenticationFailedError: If the blob is shorter than a nonce and a
                tag. The message matches a failed tag check.
        """
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailedError(_DECRYPT_FAILED)
        return cls(nonce=bytes(blob[:NONCE_SIZE]), sealed=bytes(blob[NONCE_SIZE:]))


def _check_key(key: SecureKey) -> None:
    if len(key) != AES_256_KEY_SIZE:
        raise KeyInvalidError(f"Key must be {AES_256_KEY_SIZE} bytes, got {len(key)}")


class AesGcmCipher:
    """
    AES-256-GCM without associated data.

    Used twice per secret: the payload is sealed under the DEK and each DEK
    copy is sealed under a KEK. Blobs are ``nonce(12) || ciphertext || tag(16)``.
    """

    @staticmethod
    def encrypt(key: SecureKey, plaintext: bytes) -> bytes:
        """
        Seal ``plaintext`` under ``key`` with a random nonce.

        Raises:
            KeyInvalidError: If ``key`` is not 32 bytes
            CryptoError: If the payload cannot be sealed (e.g. too large)
        """
        _check_key(key)

        nonce = generate_random_bytes(NONCE_SIZE)
        try:
            sealed = AESGCM(key.as_bytes()).encrypt(nonce, plaintext, None)
        except (OverflowError, TypeError, ValueError) as e:
            raise CryptoError(f"Encryption error: {e}")

        return EncryptedData(nonce=nonce, sealed=sealed).to_blob()

    @staticmethod
    def decrypt(key: SecureKey, blob: bytes) -> bytes:
        """
        Open a blob produced by ``encrypt``.

        Raises:
            KeyInvalidError: If ``key`` is not 32 bytes
            AuthenticationFailedError: Wrong key, altered blob or truncated
                blob, all with the same message
        """
        _check_key(key)

        parts = EncryptedData.from_blob(blob)
        try:
            return AESGCM(key.as_bytes()).decrypt(parts.nonce, parts.sealed, None)
        except InvalidTag:
            raise AuthenticationFailedError(_DECRYPT_FAILED) from None


class KeyHasher:
    """
    Digest of unwrapped DEKs, stored next to each wrapped copy.

    Plain SHA-256 by default; HMAC-SHA256 when constructed with a secret.
    """

    def __init__(self, secret: Optional[bytes] = None) -> None:
        self._secret = secret

    @property
    def keyed(self) -> bool:
        return self._secret is not None

    def hash(self, data: bytes) -> bytes:
        if self._secret is not None:
            mac = hmac.HMAC(self._secret, hashes.SHA256())
            mac.update(data)
            return mac.finalize()

        digest = hashes.Hash(hashes.SHA256())
        digest.update(data)
        return digest.finalize()

    def compare(self, data: bytes, expected_digest: bytes) -> bool:
        """Hash ``data`` and compare with ``expected_digest`` in constant time."""
        return constant_time_equal(self.hash(data), expected_digest)


def constant_time_equal(a: bytes, b: bytes) -> bool:
    """Compare two byte strings without short-circuiting on the first mismatch."""
    return constant_time.bytes_eq(a, b)


def generate_random_bytes(length: int) -> bytes:
    """``length`` bytes from the OS CSPRNG."""
    return secrets.token_bytes(length)
