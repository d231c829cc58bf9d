"""Tests for the cached experiment registry."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.ab.errors import InvalidExperiment, NotFound, StoreUnavailable
from src.ab.experiment import CHECKOUT_BUTTON_EXPERIMENT
from src.ab.registry import ExperimentRegistry
from src.collector.schemas import ExperimentStatus


class CountingStore:
    """Durable-store stand-in that counts reads and can be slowed down or broken."""

    def __init__(self, definitions=(), delay=0.0, error=None):
        self.definitions = {d.name: d for d in definitions}
        self.delay = delay
        self.error = error
        self.reads = 0
        self._lock = threading.Lock()

    def get_experiment(self, name):
        with self._lock:
            self.reads += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.definitions.get(name)

    def get_experiment_by_id(self, experiment_id):
        for d in self.definitions.values():
            if d.id == experiment_id:
                return d
        return None


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def executor():
    with ThreadPoolExecutor(max_workers=4) as pool:
        yield pool


NAME = CHECKOUT_BUTTON_EXPERIMENT.name


class TestCaching:
    def test_load_returns_experiment(self, executor):
        registry = ExperimentRegistry(CountingStore([CHECKOUT_BUTTON_EXPERIMENT]), executor)
        exp = registry.load(NAME)
        assert exp.experiment_id == "exp_checkout_button_v1"

    def test_hits_are_served_from_cache(self, executor):
        store = CountingStore([CHECKOUT_BUTTON_EXPERIMENT])
        registry = ExperimentRegistry(store, executor, ttl=30)
        for _ in range(20):
            registry.load(NAME)
        assert store.reads == 1

    def test_entry_refreshes_after_ttl(self, executor):
        store = CountingStore([CHECKOUT_BUTTON_EXPERIMENT])
        clock = FakeClock()
        registry = ExperimentRegistry(store, executor, ttl=30, clock=clock)

        assert registry.load(NAME).status is ExperimentStatus.RUNNING

        # Admin pauses the experiment; the cached definition is still served
        store.definitions[NAME] = CHECKOUT_BUTTON_EXPERIMENT.model_copy(
            update={"status": ExperimentStatus.PAUSED}
        )
        clock.now += 29
        assert registry.load(NAME).status is ExperimentStatus.RUNNING

        clock.now += 2
        assert registry.load(NAME).status is ExperimentStatus.PAUSED
        assert store.reads == 2

    def test_unknown_names_are_cached(self, executor):
        store = CountingStore()
        registry = ExperimentRegistry(store, executor, ttl=30)
        for _ in range(5):
            with pytest.raises(NotFound):
                registry.load("typo")
        assert store.reads == 1

    def test_invalidate(self, executor):
        store = CountingStore([CHECKOUT_BUTTON_EXPERIMENT])
        registry = ExperimentRegistry(store, executor, ttl=30)
        registry.load(NAME)
        registry.invalidate(NAME)
        registry.load(NAME)
        registry.invalidate()
        registry.load(NAME)
        assert store.reads == 3

    def test_load_by_id(self, executor):
        registry = ExperimentRegistry(CountingStore([CHECKOUT_BUTTON_EXPERIMENT]), executor)
        assert registry.load_by_id("exp_checkout_button_v1").name == NAME
        with pytest.raises(NotFound):
            registry.load_by_id("exp_missing")


class TestValidationAtLoad:
    def test_all_zero_weights_rejected(self, executor):
        zero = CHECKOUT_BUTTON_EXPERIMENT.model_copy(deep=True)
        for v in zero.variants:
            v.weight = 0
        registry = ExperimentRegistry(CountingStore([zero]), executor)
        with pytest.raises(InvalidExperiment):
            registry.load(NAME)

    def test_empty_variant_list_rejected(self, executor):
        empty = CHECKOUT_BUTTON_EXPERIMENT.model_copy(update={"variants": []})
        registry = ExperimentRegistry(CountingStore([empty]), executor)
        with pytest.raises(InvalidExperiment):
            registry.load(NAME)

    def test_invalid_definition_is_cached(self, executor):
        zero = CHECKOUT_BUTTON_EXPERIMENT.model_copy(deep=True)
        for v in zero.variants:
            v.weight = 0
        store = CountingStore([zero])
        registry = ExperimentRegistry(store, executor, ttl=30)
        for _ in range(50):
            with pytest.raises(InvalidExperiment, match="weight"):
                registry.load(NAME)
        assert store.reads == 1

    def test_fixed_definition_is_picked_up_after_ttl(self, executor):
        zero = CHECKOUT_BUTTON_EXPERIMENT.model_copy(deep=True)
        for v in zero.variants:
            v.weight = 0
        store = CountingStore([zero])
        clock = FakeClock()
        registry = ExperimentRegistry(store, executor, ttl=30, clock=clock)
        with pytest.raises(InvalidExperiment):
            registry.load(NAME)

        store.definitions[NAME] = CHECKOUT_BUTTON_EXPERIMENT
        clock.now += 31
        assert registry.load(NAME).experiment_id == "exp_checkout_button_v1"
        assert store.reads == 2

    def test_store_level_invalid_definition_is_cached(self, executor):
        store = CountingStore(error=InvalidExperiment("Stored definition is invalid"))
        registry = ExperimentRegistry(store, executor, ttl=30)
        for _ in range(5):
            with pytest.raises(InvalidExperiment):
                registry.load(NAME)
        assert store.reads == 1


class TestSingleFlight:
    def test_concurrent_misses_trigger_one_read(self, executor):
        store = CountingStore([CHECKOUT_BUTTON_EXPERIMENT], delay=0.2)
        registry = ExperimentRegistry(store, executor, ttl=30, timeout=2.0)
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            return registry.load(NAME)

        with ThreadPoolExecutor(max_workers=16) as callers:
            results = list(callers.map(lambda _: worker(), range(16)))

        assert store.reads == 1
        assert all(r.experiment_id == "exp_checkout_button_v1" for r in results)

    def test_failure_is_shared_and_not_cached(self, executor):
        store = CountingStore(
            [CHECKOUT_BUTTON_EXPERIMENT], delay=0.2, error=RuntimeError("connection reset")
        )
        registry = ExperimentRegistry(store, executor, ttl=30, timeout=2.0)
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                registry.load(NAME)
            except StoreUnavailable:
                return "unavailable"
            return "loaded"

        with ThreadPoolExecutor(max_workers=8) as callers:
            outcomes = list(callers.map(lambda _: worker(), range(8)))

        assert outcomes == ["unavailable"] * 8
        assert store.reads == 1

        # Backend recovered: the next call reads again
        store.error = None
        store.delay = 0
        assert registry.load(NAME).name == NAME
        assert store.reads == 2


class TestTimeouts:
    def test_slow_store_times_out(self, executor):
        store = CountingStore([CHECKOUT_BUTTON_EXPERIMENT], delay=0.5)
        registry = ExperimentRegistry(store, executor, timeout=0.05)
        started = time.monotonic()
        with pytest.raises(StoreUnavailable, match="timed out"):
            registry.load(NAME)
        assert time.monotonic() - started < 0.4

    def test_backend_error_becomes_store_unavailable(self, executor):
        store = CountingStore(error=OSError("refused"))
        registry = ExperimentRegistry(store, executor)
        with pytest.raises(StoreUnavailable, match="refused"):
            registry.load(NAME)
