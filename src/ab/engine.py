"""Experiment engine: the entry point request handlers talk to.

    engine = ExperimentEngine(DuckDBResultStore.open(), LocalCounterStore())
    variant_id = engine.get_variant("checkout-button-color", {"subjectId": "user-42"})
    engine.track_metric("checkout-button-color", "clicked", 1, {"subjectId": "user-42"})
    results = engine.get_results("exp_checkout_button_v1")

Reads never raise for expected conditions: an unknown, paused or
misconfigured experiment, a targeting mismatch or an unreachable store all
yield None. Metric tracking logs failures and drops the event.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Mapping

import structlog

from src.ab.assignment import resolve_variant
from src.ab.config import EngineConfig
from src.ab.errors import ExperimentError, NoAssignment, NotFound
from src.ab.experiment import Variant
from src.ab.recorder import MetricRecorder
from src.ab.registry import ExperimentRegistry
from src.ab.results import ExperimentResults, ResultAggregator, ResultSource
from src.ab.stores import CounterStore, DurableStore

logger = structlog.get_logger(__name__)


class ExperimentEngine:
    def __init__(
        self,
        durable_store: DurableStore,
        counter_store: CounterStore,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        # Store calls and fire-and-forget tracking use separate pools so a
        # burst of background tracking cannot starve its own store calls.
        self._io = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="ab-io"
        )
        self._background = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="ab-track"
        )
        self.registry = ExperimentRegistry(
            durable_store,
            self._io,
            ttl=self.config.cache_ttl,
            timeout=self.config.store_timeout,
        )
        self.recorder = MetricRecorder(
            self.registry, durable_store, counter_store, self._io, self.config
        )
        self.aggregator = ResultAggregator(
            self.registry, durable_store, counter_store, self.config.confidence
        )

    def __enter__(self) -> "ExperimentEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._background.shutdown(wait=True)
        self._io.shutdown(wait=True)

    # --- Assignment ---

    def get_assignment(
        self, experiment_name: str, context: Mapping[str, Any] | None = None
    ) -> Variant | None:
        """Variant for this context, or None if not eligible."""
        context = context or {}
        try:
            experiment = self.registry.load(experiment_name)
        except NotFound:
            return None
        except ExperimentError as exc:
            logger.warning(
                "assignment_unavailable",
                experiment=experiment_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return resolve_variant(
            experiment,
            context,
            self.config.subject_keys,
            self.config.anonymous_subject,
        )

    def get_variant(
        self, experiment_name: str, context: Mapping[str, Any] | None = None
    ) -> str | None:
        """Variant id for this context, or None if not eligible."""
        variant = self.get_assignment(experiment_name, context)
        return variant.variant_id if variant else None

    def require_variant(
        self, experiment_name: str, context: Mapping[str, Any] | None = None
    ) -> Variant:
        """Like get_assignment, but raises instead of returning None.

        Raises NotFound, InvalidExperiment, StoreUnavailable or NoAssignment.
        """
        experiment = self.registry.load(experiment_name)
        variant = resolve_variant(
            experiment,
            context or {},
            self.config.subject_keys,
            self.config.anonymous_subject,
        )
        if variant is None:
            raise NoAssignment(f"No assignment in {experiment_name}")
        return variant

    # --- Metrics ---

    def track_metric(
        self,
        experiment_name: str,
        metric_name: str,
        value: float,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        """Record a metric observation. Failures are logged, never raised."""
        try:
            self.recorder.record(experiment_name, metric_name, value, context or {})
        except ExperimentError as exc:
            logger.warning(
                "metric_dropped",
                experiment=experiment_name,
                metric=metric_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def submit_metric(
        self,
        experiment_name: str,
        metric_name: str,
        value: float,
        context: Mapping[str, Any] | None = None,
    ) -> Future:
        """Fire-and-forget track_metric on a background thread."""
        return self._background.submit(
            self.track_metric, experiment_name, metric_name, value, dict(context or {})
        )

    # --- Reporting ---

    def get_results(
        self,
        experiment_id: str,
        source: ResultSource | str = ResultSource.DURABLE,
    ) -> ExperimentResults:
        """Aggregated results. Raises NotFound for an unknown id."""
        return self.aggregator.get_results(experiment_id, source)

    def rebuild_counters(self, experiment_id: str) -> int:
        return self.recorder.rebuild_counters(experiment_id)
