from __future__ import annotations

import base64
import binascii

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import DecryptionError


KEY_SIZE = 32  # AES-256
IV_SIZE = 16  # one AES block
_BLOCK_BITS = algorithms.AES.block_size


class EncryptionCodec:
    """
    Stateless AES-256-CBC codec with PKCS7 padding and base64 text output.

    Notes
    - Deterministic: the same plaintext, key and IV always produce the same
      ciphertext. The IV is fixed per key, so equal values stored under
      different names are recognisable as equal on disk. Callers may rely
      on this (e.g. for deduplication); it is kept as-is.
    - There is no authentication tag. A wrong key is usually caught by the
      padding check, not always; callers decoding the plaintext must treat
      garbage output as a decryption failure too.
    """

    @staticmethod
    def encrypt(plaintext: bytes, key: bytes, iv: bytes) -> str:
        _check_material(key, iv)
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(ciphertext).decode("ascii")

    @staticmethod
    def decrypt(ciphertext: str, key: bytes, iv: bytes) -> bytes:
        """Inverse of `encrypt`. Raises DecryptionError on any malformed input."""
        _check_material(key, iv)
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError, TypeError) as ex:
            raise DecryptionError("Ciphertext is not valid base64", cause=ex) from ex

        if not raw or len(raw) % (_BLOCK_BITS // 8) != 0:
            raise DecryptionError(
                f"Ciphertext length {len(raw)} is not a positive multiple of the AES block size"
            )

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(raw) + decryptor.finalize()
        unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as ex:
            raise DecryptionError("Invalid padding: wrong key/IV or corrupted ciphertext", cause=ex) from ex


def _check_material(key: bytes, iv: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes, got {len(key)}")
    if len(iv) != IV_SIZE:
        raise ValueError(f"iv must be {IV_SIZE} bytes, got {len(iv)}")
