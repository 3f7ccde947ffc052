from __future__ import annotations

import pytest

from vault.migrations import Migration, MigrationRegistry


def _noop(handle):  # noqa: ARG001
    return None


def test_pending_selects_range_in_ascending_order():
    reg = MigrationRegistry([Migration(3, _noop), Migration(1, _noop), Migration(2, _noop)])

    assert [m.version for m in reg.pending(0, 3)] == [1, 2, 3]
    assert [m.version for m in reg.pending(1, 3)] == [2, 3]
    assert [m.version for m in reg.pending(0, 2)] == [1, 2]
    assert reg.pending(3, 3) == []


def test_duplicate_version_rejected_at_registration():
    reg = MigrationRegistry([Migration(1, _noop)])
    with pytest.raises(ValueError, match="duplicate"):
        reg.register(Migration(1, _noop))


def test_duplicate_version_rejected_in_constructor():
    with pytest.raises(ValueError):
        MigrationRegistry([Migration(2, _noop), Migration(2, _noop)])


@pytest.mark.parametrize("version", [0, -1, True, "1"])
def test_invalid_versions_rejected(version):
    with pytest.raises(ValueError):
        Migration(version, _noop)  # type: ignore[arg-type]


def test_migrate_must_be_callable():
    with pytest.raises(ValueError):
        Migration(1, "not callable")  # type: ignore[arg-type]


def test_validate_rejects_versions_above_target():
    reg = MigrationRegistry([Migration(1, _noop), Migration(4, _noop)])
    reg.validate(4)
    with pytest.raises(ValueError, match="exceed target"):
        reg.validate(3)


def test_step_decorator_registers():
    reg = MigrationRegistry()

    @reg.step(2, "add theme")
    def add_theme(handle):  # noqa: ARG001
        pass

    @reg.step(1)
    def first(handle):  # noqa: ARG001
        pass

    assert reg.versions == [1, 2]
    assert reg.latest_version == 2
    assert len(reg) == 2
    assert [m.description for m in reg] == ["", "add theme"]


def test_empty_registry():
    reg = MigrationRegistry()
    assert reg.latest_version == 0
    assert reg.pending(0, 5) == []
