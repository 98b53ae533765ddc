"""
String encodings for access keys and delete tokens.

Keys leave the store as URL path segment safe strings:
- hex: 64 lowercase characters
- base62: exactly 43 characters from ``0-9a-zA-Z`` (left-padded with ``0``)

``decode_key`` tells the two apart by length, so either form is accepted
regardless of which encoding the store was configured to emit.
"""

from __future__ import annotations

import binascii
from enum import Enum

from .crypto import AES_256_KEY_SIZE, SecureKey, generate_random_bytes
from .errors import KeyInvalidError

BASE62_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
HEX_KEY_LENGTH = AES_256_KEY_SIZE * 2
BASE62_KEY_LENGTH = 43  # 62**43 > 2**256

_BASE62_INDEX = {char: i for i, char in enumerate(BASE62_ALPHABET)}


class KeyEncoding(Enum):
    """Text encoding used for keys handed back to callers."""

    HEX = "hex"
    BASE62 = "base62"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> KeyEncoding:
        """Parse from string."""
        try:
            return cls(s.lower())
        except ValueError:
            raise KeyInvalidError(f"Unknown key encoding: {s}")


def _to_base62(raw: bytes) -> str:
    number = int.from_bytes(raw, "big")
    chars = []
    while number:
        number, rem = divmod(number, 62)
        chars.append(BASE62_ALPHABET[rem])
    return "".join(reversed(chars)).rjust(BASE62_KEY_LENGTH, BASE62_ALPHABET[0])


def _from_base62(text: str) -> bytes:
    number = 0
    for char in text:
        try:
            number = number * 62 + _BASE62_INDEX[char]
        except KeyError:
            raise KeyInvalidError("Invalid key") from None
    try:
        return number.to_bytes(AES_256_KEY_SIZE, "big")
    except OverflowError:
        raise KeyInvalidError("Invalid key") from None


def encode_key(key: SecureKey, encoding: KeyEncoding = KeyEncoding.HEX) -> str:
    """Render a 32-byte key in the requested encoding."""
    raw = key.as_bytes()
    if len(raw) != AES_256_KEY_SIZE:
        raise KeyInvalidError(
            f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(raw)}"
        )
    if encoding is KeyEncoding.BASE62:
        return _to_base62(raw)
    return raw.hex()


def decode_key(text: str) -> SecureKey:
    """
    Parse a key string produced by ``encode_key``.

    Raises:
        KeyInvalidError: If the string has the wrong length or alphabet
    """
    if len(text) == HEX_KEY_LENGTH:
        try:
            return SecureKey(binascii.unhexlify(text))
        except (binascii.Error, ValueError):
            raise KeyInvalidError("Invalid key") from None
    if len(text) == BASE62_KEY_LENGTH:
        return SecureKey(_from_base62(text))
    raise KeyInvalidError("Invalid key")


def generate_token(encoding: KeyEncoding = KeyEncoding.HEX) -> str:
    """Random 256-bit token (used for delete tokens)."""
    return encode_key(SecureKey(generate_random_bytes(AES_256_KEY_SIZE)), encoding)
