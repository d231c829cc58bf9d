"""Metric recording.

Each observation is written twice: appended to the durable results log
(authoritative) and added to the running counters (fast, best effort).
The counter increment only happens after the durable append succeeded, so
counters can lag the log but never run ahead of it.

A counter rebuild waits for recordings already in flight in this process
and holds new ones back until it is done, so a late increment cannot land
on top of totals that already include its record.

The variant is always re-derived from the request context. A variant the
caller claims to be in is ignored.
"""

import math
import threading
from concurrent.futures import Executor
from contextlib import contextmanager
from typing import Any, Mapping

import structlog

from src.ab.assignment import resolve_variant, subject_from_context
from src.ab.config import EngineConfig
from src.ab.errors import InvalidMetricValue, StoreUnavailable
from src.ab.registry import ExperimentRegistry
from src.ab.stores import CounterStore, DurableStore, counter_key
from src.ab.timeouts import call_store
from src.collector.schemas import ResultRecord

logger = structlog.get_logger(__name__)


class _WriteGate:
    """Many recordings at once, or one counter rebuild alone.

    A recording holds the gate from before its durable append until its
    counter increment has finished on the worker thread, even when the
    caller stopped waiting for it.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._writers = 0
        self._rebuilding = False

    def enter(self) -> None:
        with self._cond:
            while self._rebuilding:
                self._cond.wait()
            self._writers += 1

    def exit(self) -> None:
        with self._cond:
            self._writers -= 1
            if self._writers == 0:
                self._cond.notify_all()

    @contextmanager
    def exclusive(self):
        with self._cond:
            while self._rebuilding:
                self._cond.wait()
            self._rebuilding = True
            while self._writers:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._rebuilding = False
                self._cond.notify_all()


class MetricRecorder:
    def __init__(
        self,
        registry: ExperimentRegistry,
        durable: DurableStore,
        counters: CounterStore,
        executor: Executor,
        config: EngineConfig,
    ):
        self._registry = registry
        self._durable = durable
        self._counters = counters
        self._executor = executor
        self._config = config
        self._gate = _WriteGate()

    def record(
        self,
        experiment_name: str,
        metric_name: str,
        value: float,
        context: Mapping[str, Any],
    ) -> ResultRecord | None:
        """Record one observation for the caller's variant.

        Returns the stored record, or None when the caller has no assignment
        or the metric is not declared on the experiment. Raises NotFound,
        InvalidExperiment, InvalidMetricValue or StoreUnavailable.
        """
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise InvalidMetricValue(f"Metric value must be a number, got {value!r}") from None
        if not math.isfinite(value):
            raise InvalidMetricValue(f"Metric value must be finite, got {value}")

        experiment = self._registry.load(experiment_name)
        variant = resolve_variant(
            experiment,
            context,
            self._config.subject_keys,
            self._config.anonymous_subject,
        )
        if variant is None:
            logger.debug("metric_without_assignment", experiment=experiment_name, metric=metric_name)
            return None

        metric = experiment.metric(metric_name)
        if metric is None:
            logger.warning(
                "metric_not_declared",
                experiment=experiment_name,
                metric=metric_name,
            )
            return None

        record = ResultRecord(
            experiment_id=experiment.experiment_id,
            variant_id=variant.variant_id,
            metric_id=metric.metric_id,
            value=value,
            subject_id=subject_from_context(
                context, self._config.subject_keys, self._config.anonymous_subject
            ),
        )

        key = counter_key(record.experiment_id, record.variant_id, record.metric_id)
        self._gate.enter()
        handed_off = False
        try:
            # Raises StoreUnavailable; the counter is then left untouched
            call_store(
                self._executor, self._config.store_timeout, self._durable.append_result, record,
                op="append result",
            )
            handed_off = True
            try:
                call_store(
                    self._executor, self._config.store_timeout, self._counters.increment, key, value,
                    op="increment counter",
                    on_done=self._gate.exit,
                )
            except StoreUnavailable as exc:
                logger.warning("counter_increment_failed", key=key, error=str(exc))
        finally:
            if not handed_off:
                self._gate.exit()

        return record

    def rebuild_counters(self, experiment_id: str) -> int:
        """Overwrite an experiment's counters with totals from the results log.

        Counters with no matching rows in the log are zeroed. Returns the
        number of counters written.

        Recordings in this process are paused while the rebuild runs. Other
        processes sharing the same counter store are not; stop their traffic
        first, or a rebuild may count their in-flight records twice.
        """
        with self._gate.exclusive():
            rows = self._durable.aggregate_results(experiment_id)
            live_keys = {
                counter_key(experiment_id, row.variant_id, row.metric_id)
                for row in self._counters.snapshot(experiment_id)
            }

            written = 0
            for row in rows:
                key = counter_key(experiment_id, row.variant_id, row.metric_id)
                self._counters.reset(key, row.count, row.sum, row.sum_sq)
                live_keys.discard(key)
                written += 1
            for key in sorted(live_keys):
                self._counters.reset(key, 0, 0.0, 0.0)
                written += 1

        logger.info("counters_rebuilt", experiment_id=experiment_id, counters=written)
        return written
