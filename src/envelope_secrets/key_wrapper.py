"""
DEK wrapping under single-use-generated KEKs.

Every wrap produces a brand new KEK. The KEK is never stored; it is returned
to the caller and becomes the access key of a secret.
"""

from __future__ import annotations

from typing import Tuple

from .crypto import AES_256_KEY_SIZE, AesGcmCipher, SecureKey
from .errors import KeyInvalidError


class AesKeyWrapper:
    """Wrap and unwrap 32-byte DEKs with AES-256-GCM."""

    def wrap(self, dek: SecureKey) -> Tuple[bytes, SecureKey]:
        """
        Wrap a DEK under a freshly generated KEK.

        Args:
            dek: Data encryption key

        Returns:
            Tuple of (wrapped_dek, kek)
        """
        kek = SecureKey.generate()
        wrapped = AesGcmCipher.encrypt(kek, dek.as_bytes())
        return wrapped, kek

    def unwrap(self, kek: SecureKey, wrapped_dek: bytes) -> SecureKey:
        """
        Recover a DEK.

        Raises:
            AuthenticationFailedError: If ``kek`` did not wrap ``wrapped_dek``
            KeyInvalidError: If the recovered key is not 32 bytes
        """
        dek = AesGcmCipher.decrypt(kek, wrapped_dek)
        if len(dek) != AES_256_KEY_SIZE:
            raise KeyInvalidError("Unwrapped key has invalid size")
        return SecureKey(dek)
