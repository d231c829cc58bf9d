"""Experiment registry: definitions from the durable store, cached with a TTL.

Staleness is bounded by the TTL: when an admin pauses or completes an
experiment, running processes keep serving the cached definition until the
entry expires. Unknown names and invalid definitions are cached too, so a
typo in a template or a broken definition does not turn into one store read
per request. Store failures are never cached.

Concurrent misses for the same name are coalesced: the first caller reads
the store and everyone else waits for that read instead of issuing their
own.
"""

import threading
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Callable

import structlog

from src.ab.errors import InvalidExperiment, NotFound, StoreUnavailable
from src.ab.experiment import Experiment
from src.ab.stores import DurableStore
from src.ab.timeouts import call_store

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _CacheEntry:
    experiment: Experiment | None  # None = known not to exist or invalid
    expires_at: float
    error: str | None = None  # InvalidExperiment message


class _Call:
    """One in-flight store read shared by every waiter for the same key."""

    def __init__(self):
        self._done = threading.Event()
        self._entry: _CacheEntry | None = None
        self._error: BaseException | None = None

    def resolve(self, entry: _CacheEntry) -> None:
        self._entry = entry
        self._done.set()

    def fail(self, error: BaseException) -> None:
        self._error = error
        self._done.set()

    def wait(self, timeout: float) -> _CacheEntry:
        if not self._done.wait(timeout):
            raise StoreUnavailable(f"Timed out waiting for in-flight load after {timeout}s")
        if self._error is not None:
            raise self._error
        return self._entry


class ExperimentRegistry:
    def __init__(
        self,
        store: DurableStore,
        executor: Executor,
        ttl: float = 30.0,
        timeout: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._executor = executor
        self._ttl = ttl
        self._timeout = timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _CacheEntry] = {}
        self._inflight: dict[str, _Call] = {}

    def load(self, name: str) -> Experiment:
        """Return the named experiment.

        Raises NotFound, InvalidExperiment or StoreUnavailable.
        """
        with self._lock:
            entry = self._entries.get(name)
            if entry is not None and entry.expires_at > self._clock():
                return self._unwrap(name, entry)
            call = self._inflight.get(name)
            leader = call is None
            if leader:
                call = _Call()
                self._inflight[name] = call

        if not leader:
            # The leader's own read is bounded by timeout
            return self._unwrap(name, call.wait(self._timeout * 2))

        try:
            entry = self._fetch(name)
        except BaseException as exc:
            call.fail(exc)
            raise
        else:
            with self._lock:
                self._entries[name] = entry
            call.resolve(entry)
        finally:
            with self._lock:
                self._inflight.pop(name, None)
        return self._unwrap(name, entry)

    def load_by_id(self, experiment_id: str) -> Experiment:
        """Uncached lookup by id, for reporting."""
        definition = call_store(
            self._executor, self._timeout, self._store.get_experiment_by_id, experiment_id,
            op="load experiment by id",
        )
        if definition is None:
            raise NotFound(experiment_id)
        return Experiment.from_definition(definition)

    def invalidate(self, name: str | None = None) -> None:
        with self._lock:
            if name is None:
                self._entries.clear()
            else:
                self._entries.pop(name, None)

    def _fetch(self, name: str) -> _CacheEntry:
        # StoreUnavailable propagates and leaves the cache untouched
        try:
            definition = call_store(
                self._executor, self._timeout, self._store.get_experiment, name,
                op="load experiment",
            )
            experiment = None if definition is None else Experiment.from_definition(definition)
        except InvalidExperiment as exc:
            logger.warning("experiment_invalid", experiment=name, error=str(exc))
            return _CacheEntry(None, self._clock() + self._ttl, error=str(exc))
        if experiment is None:
            logger.info("experiment_not_found", experiment=name)
        else:
            logger.debug("experiment_loaded", experiment=name, status=experiment.status.value)
        return _CacheEntry(experiment, self._clock() + self._ttl)

    @staticmethod
    def _unwrap(name: str, entry: _CacheEntry) -> Experiment:
        if entry.error is not None:
            raise InvalidExperiment(entry.error)
        if entry.experiment is None:
            raise NotFound(name)
        return entry.experiment
