import pytest

from src.ab.config import EngineConfig
from src.ab.engine import ExperimentEngine
from src.warehouse.counters import LocalCounterStore
from src.warehouse.db import DuckDBResultStore, get_connection


@pytest.fixture
def store():
    s = DuckDBResultStore(get_connection(":memory:"))
    yield s
    s.close()


@pytest.fixture
def counters():
    return LocalCounterStore()


@pytest.fixture
def engine(store, counters):
    # No caching: status changes made by a test are visible immediately
    with ExperimentEngine(store, counters, EngineConfig(cache_ttl=0, store_timeout=2.0)) as e:
        yield e
