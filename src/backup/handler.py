from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional

from common.config import StorageSettings
from common.diagnostics import safe_log
from vault.engine import StorageEngine


logger = logging.getLogger(__name__)

# Environment variable names
ENV_BACKUP_RETAIN = "BOXVAULT_BACKUP_RETAIN"  # optional; defaults to 7
ENV_BACKUP_PREFIX = "BOXVAULT_BACKUP_PREFIX"  # optional; defaults to "auto-"

DEFAULT_RETAIN = 7
DEFAULT_PREFIX = "auto-"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _parse_retain(raw: Optional[str]) -> int:
    if raw is None:
        return DEFAULT_RETAIN
    try:
        n = int(raw)
    except ValueError as ex:
        raise RuntimeError(f"Invalid {ENV_BACKUP_RETAIN}: {raw!r} is not an integer") from ex
    if n < 1:
        raise RuntimeError(f"Invalid {ENV_BACKUP_RETAIN}: must be >= 1, got {n}")
    return n


def backup_name(now: datetime, prefix: str = DEFAULT_PREFIX) -> str:
    # Sortable UTC stamp, so name order is creation order
    return f"{prefix}{now.astimezone(UTC).strftime('%Y%m%dT%H%M%SZ')}"


def prune_backups(engine: StorageEngine, *, prefix: str, retain: int) -> List[str]:
    """Delete the oldest `prefix` backups beyond `retain`; returns deleted names."""
    ours = [n for n in engine.list_backups() if n.startswith(prefix)]
    excess = ours[: max(0, len(ours) - retain)]
    for name in excess:
        engine.delete_backup(name)
    return excess


def run_once(
    *,
    engine_factory: Optional[Callable[[StorageSettings], StorageEngine]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    # Resolve env configuration
    settings = StorageSettings.from_env()
    retain = _parse_retain(_getenv(ENV_BACKUP_RETAIN))
    prefix = _getenv(ENV_BACKUP_PREFIX, DEFAULT_PREFIX) or DEFAULT_PREFIX

    factory = engine_factory or StorageEngine.from_settings
    engine = factory(settings)
    with engine:
        name = backup_name(now or datetime.now(UTC), prefix)
        engine.create_backup(name)
        pruned = prune_backups(engine, prefix=prefix, retain=retain)
        version = engine.stored_version

    safe_log(logger, logging.INFO, "Scheduled backup '%s' created; pruned %d", name, len(pruned))
    return {
        "ok": True,
        "backup": name,
        "pruned": pruned,
        "version": version,
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    return run_once()
