"""
Versioned, encrypted key-value storage.

Values are JSON-encoded, encrypted with AES-256-CBC (key and IV held by
`KeyManager` in a protected store), and kept base64-encoded in a primary
box. A schema version in the same box drives in-place migrations; named
snapshots of the primary box live in a separate backup box.
"""

from .codec import EncryptionCodec
from .engine import VERSION_KEY, BoxHandle, EngineState, StorageEngine
from .errors import (
    BackupNotFoundError,
    DecryptionError,
    ErrorKind,
    KeyInitializationError,
    MigrationError,
    NotInitializedError,
    SerializationError,
    StorageException,
    StorageIOError,
)
from .keys import KeyManager
from .migrations import Migration, MigrationRegistry

__all__ = [
    "VERSION_KEY",
    "BackupNotFoundError",
    "BoxHandle",
    "DecryptionError",
    "EncryptionCodec",
    "EngineState",
    "ErrorKind",
    "KeyInitializationError",
    "KeyManager",
    "Migration",
    "MigrationError",
    "MigrationRegistry",
    "NotInitializedError",
    "SerializationError",
    "StorageEngine",
    "StorageException",
    "StorageIOError",
]
