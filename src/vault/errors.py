from __future__ import annotations

import traceback
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    KEY_INITIALIZATION = "key_initialization"
    NOT_INITIALIZED = "not_initialized"
    DECRYPTION = "decryption"
    SERIALIZATION = "serialization"
    BACKUP_NOT_FOUND = "backup_not_found"
    MIGRATION = "migration"
    IO = "io"


class StorageException(Exception):
    """
    Base error for every storage failure.

    Carries a human-readable message, the error `kind`, the underlying
    `cause` (if any), and `trace`, the formatted traceback of the cause.
    Catch this to handle all storage failures; catch a subclass to handle
    one kind.
    """

    kind: ErrorKind = ErrorKind.IO

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        cause: Optional[BaseException] = None,
        trace: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.cause = cause
        if trace is None and cause is not None and cause.__traceback__ is not None:
            trace = "".join(traceback.format_exception(type(cause), cause, cause.__traceback__))
        self.trace = trace

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message} (caused by {type(self.cause).__name__}: {self.cause})"


class KeyInitializationError(StorageException):
    """Cryptographic material is unavailable or could not be generated."""

    kind = ErrorKind.KEY_INITIALIZATION


class NotInitializedError(StorageException):
    """An operation was attempted before the engine (or key manager) was ready."""

    kind = ErrorKind.NOT_INITIALIZED


class DecryptionError(StorageException):
    """Ciphertext is malformed or was produced under a different key/IV."""

    kind = ErrorKind.DECRYPTION


class SerializationError(StorageException):
    """A value is not JSON-representable, or stored JSON failed to decode."""

    kind = ErrorKind.SERIALIZATION


class BackupNotFoundError(StorageException):
    kind = ErrorKind.BACKUP_NOT_FOUND


class MigrationError(StorageException):
    """A migration step raised; `version` is the step that failed."""

    kind = ErrorKind.MIGRATION

    def __init__(self, message: str, *, version: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.version = version


class StorageIOError(StorageException):
    """Reading or writing a box failed."""

    kind = ErrorKind.IO
