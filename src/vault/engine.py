from __future__ import annotations

import json
import logging
import os
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar, Union, overload

from pydantic import BaseModel, ValidationError

from common.config import StorageSettings
from common.diagnostics import safe_log
from common.paths import default_base_dir

from .boxes import Box, FileBox
from .codec import EncryptionCodec
from .errors import (
    BackupNotFoundError,
    DecryptionError,
    KeyInitializationError,
    MigrationError,
    NotInitializedError,
    SerializationError,
    StorageException,
    StorageIOError,
)
from .keys import KeyManager
from .migrations import Migration, MigrationRegistry
from .secret_stores import secret_store_for


logger = logging.getLogger(__name__)

# Reserved primary-box entry holding the schema version (stored unencrypted)
VERSION_KEY = "_storage_version"

JsonValue = Union[None, bool, int, float, str, List["JsonValue"], Dict[str, "JsonValue"]]
M = TypeVar("M", bound=BaseModel)
BoxFactory = Callable[[str], Box]


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


def _dump_json(value: Union[JsonValue, BaseModel]) -> bytes:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    # Deterministic JSON: stable key order, no extra whitespace
    try:
        text = json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as ex:
        raise SerializationError(f"Value of type {type(value).__name__} is not JSON-serializable", cause=ex) from ex
    return text.encode("utf-8")


def _check_user_key(key: str) -> None:
    if not isinstance(key, str) or not key:
        raise ValueError("key must be a non-empty string")
    if key == VERSION_KEY:
        raise ValueError(f"'{VERSION_KEY}' is reserved for schema version tracking")


class BoxHandle:
    """
    Encrypting view over a box.

    Used by the engine for all CRUD and handed to migrations, so migration
    code reads and writes values in the same on-disk format as `save`.
    The reserved version entry is hidden from `keys()` and membership.
    """

    def __init__(self, box: Box, keys: KeyManager) -> None:
        self._box = box
        self._keys = keys

    @property
    def raw(self) -> Box:
        """The underlying box, ciphertext and version entry included."""
        return self._box

    def encrypt(self, value: Union[JsonValue, BaseModel]) -> str:
        return EncryptionCodec.encrypt(_dump_json(value), self._keys.key, self._keys.iv)

    def decrypt(self, key: str, ciphertext: Any) -> JsonValue:
        if not isinstance(ciphertext, str):
            raise DecryptionError(f"Entry '{key}' is not ciphertext ({type(ciphertext).__name__})")
        plain = EncryptionCodec.decrypt(ciphertext, self._keys.key, self._keys.iv)
        try:
            text = plain.decode("utf-8")
        except UnicodeDecodeError as ex:
            # Valid padding over garbage: a key/IV mismatch that slipped past the padding check
            raise DecryptionError(f"Entry '{key}' did not decrypt to UTF-8 text", cause=ex) from ex
        try:
            return json.loads(text)
        except ValueError as ex:
            raise SerializationError(f"Entry '{key}' is not valid JSON after decryption", cause=ex) from ex

    def get(self, key: str, default: Any = None) -> Any:
        _check_user_key(key)
        ciphertext = self._box.get(key)
        if ciphertext is None:
            return default
        return self.decrypt(key, ciphertext)

    def put(self, key: str, value: Union[JsonValue, BaseModel]) -> None:
        _check_user_key(key)
        self._box.put(key, self.encrypt(value))

    def delete(self, key: str) -> None:
        _check_user_key(key)
        self._box.delete(key)

    def rename(self, old: str, new: str) -> bool:
        """Move an entry to a new key. Returns False if `old` is absent."""
        _check_user_key(old)
        _check_user_key(new)
        ciphertext = self._box.get(old)
        if ciphertext is None:
            return False
        # One IV per key pair, not per entry: ciphertext moves without re-encryption
        self._box.put(new, ciphertext)
        self._box.delete(old)
        return True

    def keys(self) -> List[str]:
        return [k for k in self._box.keys() if k != VERSION_KEY]

    def __contains__(self, key: object) -> bool:
        return key != VERSION_KEY and key in self._box


class StorageEngine:
    """
    Versioned, encrypted key-value store with backups.

    Lifecycle: construct -> `initialize()` -> use -> optional `close()`.
    `initialize()` loads (or generates) the key/IV pair, opens the primary
    and backup boxes, and applies every registered migration above the
    stored schema version in ascending order before recording the target
    version. A failed initialization leaves the engine in FAILED for good;
    build a new engine once the cause is fixed.

    Values are JSON-encoded, AES-CBC encrypted and stored base64 encoded.
    The engine does no locking: callers serialize concurrent access.
    """

    def __init__(
        self,
        key_manager: KeyManager,
        *,
        target_version: int = 1,
        migrations: Union[MigrationRegistry, Iterable[Migration], None] = None,
        base_dir: Optional[os.PathLike[str] | str] = None,
        primary_box: str = "secure_storage",
        backup_box: str = "backup_storage",
        box_factory: Optional[BoxFactory] = None,
        compact_threshold: int = 500,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if isinstance(target_version, bool) or not isinstance(target_version, int) or target_version < 1:
            raise ValueError(f"target_version must be a positive integer, got {target_version!r}")
        if primary_box == backup_box:
            raise ValueError("primary and backup boxes must have different names")

        registry = migrations if isinstance(migrations, MigrationRegistry) else MigrationRegistry(migrations)
        registry.validate(target_version)

        self._key_manager = key_manager
        self._target_version = target_version
        self._registry = registry
        self._primary_name = primary_box
        self._backup_name = backup_box
        self._log = log or logger
        if box_factory is None:
            base = base_dir if base_dir is not None else default_base_dir()
            box_factory = lambda name: FileBox(  # noqa: E731
                base, name, compact_threshold=compact_threshold, log=self._log
            )
        self._box_factory = box_factory

        self._state = EngineState.UNINITIALIZED
        self._primary: Optional[Box] = None
        self._backups: Optional[Box] = None
        self._handle: Optional[BoxHandle] = None

    # -------- Construction helpers --------
    @classmethod
    def from_settings(
        cls,
        settings: StorageSettings,
        *,
        migrations: Union[MigrationRegistry, Iterable[Migration], None] = None,
        log: Optional[logging.Logger] = None,
    ) -> "StorageEngine":
        key_manager = KeyManager(secret_store_for(settings), log=log)
        return cls(
            key_manager,
            target_version=settings.target_version,
            migrations=migrations,
            base_dir=settings.base_dir,
            primary_box=settings.primary_box,
            backup_box=settings.backup_box,
            compact_threshold=settings.compact_threshold,
            log=log,
        )

    # -------- State --------
    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def target_version(self) -> int:
        return self._target_version

    @property
    def stored_version(self) -> int:
        self._require_ready()
        return self._read_version()

    def _require_ready(self) -> None:
        if self._state is not EngineState.READY:
            raise NotInitializedError(
                f"Storage engine is {self._state.value}; call initialize() first"
            )

    def _read_version(self) -> int:
        assert self._primary is not None
        value = self._primary.get(VERSION_KEY, 0)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise StorageIOError(f"Stored schema version is corrupt: {value!r}")
        return value

    # -------- Initialization --------
    def initialize(self) -> None:
        if self._state is EngineState.READY:
            safe_log(self._log, logging.INFO, "Storage engine already initialized; nothing to do")
            return
        if self._state is not EngineState.UNINITIALIZED:
            raise NotInitializedError(
                f"Cannot initialize a storage engine in state '{self._state.value}'"
            )

        self._state = EngineState.INITIALIZING
        safe_log(self._log, logging.INFO, "Initializing storage (target version %d)", self._target_version)
        try:
            self._open()
            self._run_migrations()
        except Exception as ex:
            self._state = EngineState.FAILED
            self._close_boxes()
            safe_log(self._log, logging.ERROR, "Storage initialization failed: %s", ex)
            if isinstance(ex, StorageException):
                raise
            raise StorageIOError("Failed to initialize storage engine", cause=ex) from ex

        self._state = EngineState.READY
        safe_log(self._log, logging.INFO, "Storage ready at version %d", self._target_version)

    def _open(self) -> None:
        try:
            self._key_manager.initialize()
        except KeyInitializationError:
            raise
        except Exception as ex:
            raise KeyInitializationError("Key manager failed to initialize", cause=ex) from ex

        self._primary = self._box_factory(self._primary_name)
        self._backups = self._box_factory(self._backup_name)
        self._handle = BoxHandle(self._primary, self._key_manager)

    def _run_migrations(self) -> None:
        assert self._primary is not None and self._handle is not None
        stored = self._read_version()
        if stored >= self._target_version:
            if stored > self._target_version:
                safe_log(
                    self._log,
                    logging.WARNING,
                    "Stored version %d is ahead of target %d; leaving it unchanged",
                    stored,
                    self._target_version,
                )
            return

        for migration in self._registry.pending(stored, self._target_version):
            safe_log(
                self._log,
                logging.INFO,
                "Applying migration %d%s",
                migration.version,
                f" ({migration.description})" if migration.description else "",
            )
            try:
                migration.migrate(self._handle)
            except Exception as ex:
                raise MigrationError(
                    f"Migration to version {migration.version} failed; box left partially migrated",
                    version=migration.version,
                    cause=ex,
                ) from ex

        self._primary.put(VERSION_KEY, self._target_version)
        safe_log(self._log, logging.INFO, "Schema version %d -> %d", stored, self._target_version)

    # -------- CRUD --------
    def save(self, key: str, value: Union[JsonValue, BaseModel]) -> None:
        """Encrypt `value` and store it under `key`, replacing any previous value."""
        self._require_ready()
        assert self._handle is not None
        self._handle.put(key, value)

    @overload
    def load(self, key: str) -> Optional[JsonValue]: ...

    @overload
    def load(self, key: str, *, model: Type[M]) -> Optional[M]: ...

    def load(self, key: str, *, model: Optional[Type[M]] = None) -> Any:
        """
        Return the decrypted value for `key`, or None when the key is absent.

        A present-but-unreadable entry raises instead: DecryptionError when
        the ciphertext is malformed or belongs to another key/IV, and
        SerializationError when the plaintext is not valid JSON or does not
        validate against `model`.
        """
        self._require_ready()
        assert self._handle is not None
        value = self._handle.get(key)
        if value is None or model is None:
            return value
        try:
            return model.model_validate(value)
        except ValidationError as ex:
            raise SerializationError(
                f"Entry '{key}' does not match {model.__name__}", cause=ex
            ) from ex

    def delete(self, key: str) -> None:
        self._require_ready()
        assert self._handle is not None
        self._handle.delete(key)

    def clear(self) -> None:
        """Remove every entry; the schema version survives."""
        self._require_ready()
        assert self._primary is not None
        version = self._primary.get(VERSION_KEY)
        self._primary.replace_all({} if version is None else {VERSION_KEY: version})
        safe_log(self._log, logging.INFO, "Primary box cleared (version %s kept)", version)

    def contains_key(self, key: str) -> bool:
        self._require_ready()
        assert self._handle is not None
        return key in self._handle

    def keys(self) -> List[str]:
        self._require_ready()
        assert self._handle is not None
        return self._handle.keys()

    # -------- Backups --------
    def create_backup(self, name: str) -> None:
        """Snapshot the whole primary box (version entry included) under `name`."""
        self._require_ready()
        assert self._primary is not None and self._backups is not None
        if not isinstance(name, str) or not name:
            raise ValueError("backup name must be a non-empty string")
        snapshot = self._primary.to_dict()
        blob = json.dumps(snapshot, separators=(",", ":"), sort_keys=True)
        self._backups.put(name, blob)
        safe_log(self._log, logging.INFO, "Backup '%s' created (%d entries)", name, len(snapshot))

    def restore_backup(self, name: str) -> None:
        """
        Replace the primary box with the snapshot stored under `name`.

        The version entry is restored too, so the schema version can move
        backward; the result is exactly the state at backup time.
        """
        self._require_ready()
        assert self._primary is not None and self._backups is not None
        blob = self._backups.get(name)
        if blob is None:
            raise BackupNotFoundError(f"Backup not found: {name}")
        try:
            snapshot = json.loads(blob)
        except (TypeError, ValueError) as ex:
            raise SerializationError(f"Backup '{name}' is not valid JSON", cause=ex) from ex
        if not isinstance(snapshot, dict):
            raise SerializationError(f"Backup '{name}' is not a JSON object")

        self._primary.replace_all(snapshot)
        safe_log(
            self._log,
            logging.INFO,
            "Backup '%s' restored (%d entries, version %s)",
            name,
            len(snapshot),
            snapshot.get(VERSION_KEY),
        )

    def list_backups(self) -> List[str]:
        self._require_ready()
        assert self._backups is not None
        return sorted(self._backups.keys())

    def delete_backup(self, name: str) -> None:
        self._require_ready()
        assert self._backups is not None
        if name in self._backups:
            self._backups.delete(name)
            safe_log(self._log, logging.INFO, "Backup '%s' deleted", name)

    # -------- Lifecycle --------
    def _close_boxes(self) -> None:
        for box in (self._primary, self._backups):
            if box is not None:
                box.close()
        self._primary = self._backups = None
        self._handle = None

    def close(self) -> None:
        self._close_boxes()
        if self._state is not EngineState.FAILED:
            self._state = EngineState.CLOSED

    def reset(self) -> None:
        """Test-only: drop open boxes and return to UNINITIALIZED."""
        self.close()
        self._state = EngineState.UNINITIALIZED

    def __enter__(self) -> "StorageEngine":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
