from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field


# Environment variable names
ENV_BASE_DIR = "BOXVAULT_HOME"
ENV_PRIMARY_BOX = "BOXVAULT_PRIMARY_BOX"
ENV_BACKUP_BOX = "BOXVAULT_BACKUP_BOX"
ENV_TARGET_VERSION = "BOXVAULT_TARGET_VERSION"
ENV_SECRET_BACKEND = "BOXVAULT_SECRET_BACKEND"
ENV_SSM_PREFIX = "BOXVAULT_SSM_PREFIX"
ENV_KEYRING_SERVICE = "BOXVAULT_KEYRING_SERVICE"
ENV_COMPACT_THRESHOLD = "BOXVAULT_COMPACT_THRESHOLD"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


class StorageSettings(BaseModel):
    """
    Configuration for a storage engine and its collaborators.

    Fields
    - base_dir: directory holding the box files (None = platform default).
    - primary_box / backup_box: box names; each maps to `<name>.box`.
    - target_version: schema version the engine migrates to on initialize.
    - secret_backend: where the key/IV pair lives (`ssm`, `keyring`, `memory`).
    - ssm_prefix: parameter name prefix, required for the `ssm` backend.
    - keyring_service: service name for the `keyring` backend.
    - compact_threshold: dead log records tolerated before a file box compacts.
    """

    base_dir: Optional[Path] = None
    primary_box: str = Field(default="secure_storage", min_length=1)
    backup_box: str = Field(default="backup_storage", min_length=1)
    target_version: int = Field(default=1, ge=1)
    secret_backend: Literal["ssm", "keyring", "memory"] = "keyring"
    ssm_prefix: Optional[str] = None
    keyring_service: str = Field(default="boxvault", min_length=1)
    compact_threshold: int = Field(default=500, ge=1)

    @classmethod
    def from_env(cls) -> "StorageSettings":
        backend = _getenv(ENV_SECRET_BACKEND, "keyring")
        prefix = _getenv(ENV_SSM_PREFIX)
        if backend == "ssm" and not prefix:
            raise RuntimeError(
                f"Missing required environment variables for SSM secret backend: {ENV_SSM_PREFIX}"
            )

        raw = {
            "base_dir": _getenv(ENV_BASE_DIR),
            "primary_box": _getenv(ENV_PRIMARY_BOX, "secure_storage"),
            "backup_box": _getenv(ENV_BACKUP_BOX, "backup_storage"),
            "target_version": _getenv(ENV_TARGET_VERSION, "1"),
            "secret_backend": backend,
            "ssm_prefix": prefix,
            "keyring_service": _getenv(ENV_KEYRING_SERVICE, "boxvault"),
            "compact_threshold": _getenv(ENV_COMPACT_THRESHOLD, "500"),
        }
        # pydantic coerces the numeric strings and raises ValidationError on bad values
        return cls.model_validate(raw)
