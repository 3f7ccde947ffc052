from __future__ import annotations

import base64
import binascii
import logging
import secrets
from typing import Optional

from common.diagnostics import safe_log

from .codec import IV_SIZE, KEY_SIZE
from .errors import KeyInitializationError, NotInitializedError
from .secret_stores import SecretStore


logger = logging.getLogger(__name__)

KEY_SECRET_NAME = "encryption_key"
IV_SECRET_NAME = "encryption_iv"

# Tag for the material scheme in use. A future rotation path would bump
# this and keep older versions readable; rotation is not implemented.
CURRENT_KEY_VERSION = 1


class KeyManager:
    """
    Owns the AES key and its paired IV.

    `initialize()` loads both from the protected store, or generates and
    persists a fresh pair on first use. The pair is always created and
    removed together: regenerating one half would orphan every existing
    ciphertext, so partial material is an error, not a reason to regenerate.
    """

    def __init__(self, store: SecretStore, *, log: Optional[logging.Logger] = None) -> None:
        self._store = store
        self._log = log or logger
        self._key: Optional[bytes] = None
        self._iv: Optional[bytes] = None

    @property
    def initialized(self) -> bool:
        return self._key is not None and self._iv is not None

    @property
    def key(self) -> bytes:
        if self._key is None:
            raise NotInitializedError("KeyManager.key accessed before initialize()")
        return self._key

    @property
    def iv(self) -> bytes:
        if self._iv is None:
            raise NotInitializedError("KeyManager.iv accessed before initialize()")
        return self._iv

    @property
    def key_version(self) -> int:
        return CURRENT_KEY_VERSION

    def initialize(self) -> None:
        if self.initialized:
            return

        try:
            stored_key = self._store.read(KEY_SECRET_NAME)
            stored_iv = self._store.read(IV_SECRET_NAME)
        except Exception as ex:
            raise KeyInitializationError("Protected store is unavailable", cause=ex) from ex

        if stored_key is not None and stored_iv is not None:
            key = _decode(stored_key, KEY_SIZE, KEY_SECRET_NAME)
            iv = _decode(stored_iv, IV_SIZE, IV_SECRET_NAME)
            safe_log(self._log, logging.DEBUG, "Loaded encryption key and IV from protected store")
        elif stored_key is None and stored_iv is None:
            key = secrets.token_bytes(KEY_SIZE)
            iv = secrets.token_bytes(IV_SIZE)
            try:
                self._store.write(KEY_SECRET_NAME, base64.b64encode(key).decode("ascii"))
                self._store.write(IV_SECRET_NAME, base64.b64encode(iv).decode("ascii"))
            except Exception as ex:
                # Half a pair would block every later initialize; drop whatever landed
                for name in (KEY_SECRET_NAME, IV_SECRET_NAME):
                    try:
                        self._store.delete(name)
                    except Exception as cleanup_ex:
                        safe_log(
                            self._log,
                            logging.WARNING,
                            "Could not remove partially persisted secret '%s': %s",
                            name,
                            cleanup_ex,
                        )
                raise KeyInitializationError("Failed to persist generated key material", cause=ex) from ex
            safe_log(self._log, logging.INFO, "Generated new encryption key and IV")
        else:
            missing = KEY_SECRET_NAME if stored_key is None else IV_SECRET_NAME
            raise KeyInitializationError(
                f"Partial key material in protected store: '{missing}' is missing; "
                "refusing to regenerate one half of the pair"
            )

        self._key, self._iv = key, iv

    def clear_keys(self) -> None:
        """Delete the stored pair and unload it. Existing ciphertext becomes unreadable."""
        try:
            self._store.delete(KEY_SECRET_NAME)
            self._store.delete(IV_SECRET_NAME)
        except Exception as ex:
            raise KeyInitializationError("Failed to delete key material", cause=ex) from ex
        self._key = None
        self._iv = None
        safe_log(self._log, logging.WARNING, "Encryption key and IV deleted from protected store")


def _decode(value: str, size: int, name: str) -> bytes:
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as ex:
        raise KeyInitializationError(f"Stored '{name}' is not valid base64", cause=ex) from ex
    if len(raw) != size:
        raise KeyInitializationError(f"Stored '{name}' has {len(raw)} bytes, expected {size}")
    return raw
