from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_data_dir


APP_NAME = "boxvault"
ENV_HOME = "BOXVAULT_HOME"


def default_base_dir() -> Path:
    # Prefer explicit env var, else the platform's per-user data dir
    base = os.environ.get(ENV_HOME)
    if base:
        return Path(base).expanduser()
    return Path(user_data_dir(APP_NAME, appauthor=False))


def ensure_dir(path: os.PathLike[str] | str) -> Path:
    """Create `path` (and parents) if needed, owner-only where the OS honours modes."""
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True, mode=0o700)
    return p
