import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.join(ROOT, "src"))


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # profile selection must come from each test, not the developer's shell
    for k in ("ACTIVE_CONFIG", "STAKEWATCH_CONFIG_FILE"):
        monkeypatch.delenv(k, raising=False)
    yield


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "databases" / "test.duckdb")


@pytest.fixture
def kv_store(db_path):
    from kv_store import KeyValueStore
    return KeyValueStore(database_path=db_path)
