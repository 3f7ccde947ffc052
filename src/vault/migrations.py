from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

if TYPE_CHECKING:
    from .engine import BoxHandle


MigrateFn = Callable[["BoxHandle"], None]


@dataclass(frozen=True)
class Migration:
    """
    One schema step: transforms version `version - 1` data into `version` data.

    `migrate` receives a `BoxHandle` over the primary box; values read and
    written through it are encrypted the same way `StorageEngine.save` does.
    """

    version: int
    migrate: MigrateFn
    description: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.version, bool) or not isinstance(self.version, int):
            raise ValueError(f"migration version must be an int, got {self.version!r}")
        if self.version < 1:
            raise ValueError(f"migration version must be >= 1, got {self.version}")
        if not callable(self.migrate):
            raise ValueError(f"migration {self.version}: migrate must be callable")


class MigrationRegistry:
    """
    Ordered set of migrations, at most one per version.

    Duplicate versions are rejected at registration time; the engine also
    rejects versions above its target before initialization begins.
    """

    def __init__(self, migrations: Optional[Iterable[Migration]] = None) -> None:
        self._by_version: Dict[int, Migration] = {}
        for m in migrations or ():
            self.register(m)

    def register(self, migration: Migration) -> Migration:
        if migration.version in self._by_version:
            raise ValueError(f"duplicate migration for version {migration.version}")
        self._by_version[migration.version] = migration
        return migration

    def step(self, version: int, description: str = "") -> Callable[[MigrateFn], MigrateFn]:
        """Decorator form of `register`."""

        def deco(fn: MigrateFn) -> MigrateFn:
            self.register(Migration(version=version, migrate=fn, description=description))
            return fn

        return deco

    @property
    def versions(self) -> List[int]:
        return sorted(self._by_version)

    @property
    def latest_version(self) -> int:
        return max(self._by_version, default=0)

    def validate(self, target_version: int) -> None:
        out_of_range = [v for v in self._by_version if v > target_version]
        if out_of_range:
            raise ValueError(
                f"migrations {sorted(out_of_range)} exceed target version {target_version}"
            )

    def pending(self, stored_version: int, target_version: int) -> List[Migration]:
        """Migrations with stored_version < version <= target_version, ascending."""
        return [
            self._by_version[v]
            for v in sorted(self._by_version)
            if stored_version < v <= target_version
        ]

    def __len__(self) -> int:
        return len(self._by_version)

    def __iter__(self):
        return iter(self.pending(0, self.latest_version))
