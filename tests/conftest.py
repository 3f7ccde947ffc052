import os
import sys

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `vault.*` / `common.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def secret_store():
    from vault.secret_stores import InMemorySecretStore

    return InMemorySecretStore()


@pytest.fixture
def make_engine(tmp_path, secret_store):
    """Factory for engines sharing one data dir and one key pair."""
    from vault.engine import StorageEngine
    from vault.keys import KeyManager

    created = []

    def _make(**kwargs):
        kwargs.setdefault("base_dir", tmp_path / "data")
        engine = StorageEngine(KeyManager(secret_store), **kwargs)
        created.append(engine)
        return engine

    yield _make
    for engine in created:
        engine.close()
