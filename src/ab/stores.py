"""Interfaces for the two stores the engine depends on.

The durable store holds experiment definitions and the append-only results
log; it is the source of truth for reporting. The counter store keeps
running per-(variant, metric) totals for live dashboards and can be rebuilt
from the log at any time.
"""

from typing import Protocol

from src.collector.schemas import (
    AggregateRow,
    ExperimentDefinition,
    ExperimentStatus,
    ResultRecord,
)


def counter_key(experiment_id: str, variant_id: str, metric_id: str) -> str:
    return f"exp:{experiment_id}:{variant_id}:{metric_id}"


class DurableStore(Protocol):
    def get_experiment(self, name: str) -> ExperimentDefinition | None: ...

    def get_experiment_by_id(self, experiment_id: str) -> ExperimentDefinition | None: ...

    def save_experiment(self, definition: ExperimentDefinition) -> None: ...

    def set_status(self, name: str, status: ExperimentStatus) -> None: ...

    def list_experiments(self) -> list[ExperimentDefinition]: ...

    def append_result(self, record: ResultRecord) -> None: ...

    def aggregate_results(self, experiment_id: str) -> list[AggregateRow]: ...


class CounterStore(Protocol):
    def increment(self, key: str, value: float) -> None:
        """Atomically add one observation: count += 1, sum += value,
        sum_sq += value**2."""
        ...

    def snapshot(self, experiment_id: str) -> list[AggregateRow]: ...

    def reset(self, key: str, count: int, total: float, total_sq: float) -> None: ...
