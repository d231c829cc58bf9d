"""Per-variant results and a significance estimate.

Totals come either from the durable results log (authoritative, use for
reporting) or from the counter store (live, may lag the log).

The significance estimate is a Welch two-mean z-test of each variant
against the control (the first variant). It is meant for dashboards:
there is no correction for peeking or for multiple comparisons.
"""

import math
from enum import Enum

import structlog
from pydantic import BaseModel
from scipy import stats

from src.ab.experiment import Experiment
from src.ab.registry import ExperimentRegistry
from src.ab.stores import CounterStore, DurableStore
from src.collector.schemas import AggregateRow

logger = structlog.get_logger(__name__)


class ResultSource(str, Enum):
    DURABLE = "durable"
    LIVE = "live"


class ResultCell(BaseModel):
    variant_id: str
    metric_id: str
    count: int
    sum: float
    average: float


class Comparison(BaseModel):
    metric_id: str
    control_id: str
    variant_id: str
    control_mean: float
    variant_mean: float
    z_score: float | None
    p_value: float | None
    significant: bool


class ExperimentResults(BaseModel):
    experiment_id: str
    source: ResultSource
    confidence: float
    cells: list[ResultCell]
    comparisons: list[Comparison]
    # metric_id -> candidate winner variant_id (None = no winner yet)
    winners: dict[str, str | None]

    def cell(self, variant_id: str, metric_id: str) -> ResultCell | None:
        for c in self.cells:
            if c.variant_id == variant_id and c.metric_id == metric_id:
                return c
        return None


def _variance(row: AggregateRow) -> float:
    """Sample variance from count, sum and sum of squares."""
    n = row.count
    var = (row.sum_sq - row.sum * row.sum / n) / (n - 1)
    # Rounding can push a zero variance slightly negative
    return max(var, 0.0)


def _mean(row: AggregateRow | None) -> float:
    if row is None or row.count == 0:
        return 0.0
    return row.sum / row.count


def z_test(control: AggregateRow, variant: AggregateRow) -> tuple[float, float] | None:
    """Welch z-test of variant mean vs control mean.

    Returns (z, two-sided p-value), or None when either arm has fewer than
    two observations or the standard error is zero.
    """
    if control.count < 2 or variant.count < 2:
        return None
    se = math.sqrt(_variance(control) / control.count + _variance(variant) / variant.count)
    if se == 0:
        return None
    z = (_mean(variant) - _mean(control)) / se
    p_value = float(2 * stats.norm.sf(abs(z)))
    return z, p_value


def compare(
    metric_id: str,
    control_id: str,
    control: AggregateRow | None,
    variant_id: str,
    variant: AggregateRow | None,
    confidence: float,
) -> Comparison:
    outcome = None
    if control is not None and variant is not None:
        outcome = z_test(control, variant)
    z, p_value = outcome if outcome is not None else (None, None)
    return Comparison(
        metric_id=metric_id,
        control_id=control_id,
        variant_id=variant_id,
        control_mean=_mean(control),
        variant_mean=_mean(variant),
        z_score=z,
        p_value=p_value,
        significant=p_value is not None and (1.0 - p_value) >= confidence,
    )


def pick_winner(comparisons: list[Comparison]) -> str | None:
    """Candidate winner among one metric's comparisons against the control.

    The best significantly-better challenger wins. If the control is
    significantly better than every challenger, the control wins.
    """
    if not comparisons:
        return None
    better = [c for c in comparisons if c.significant and c.variant_mean > c.control_mean]
    if better:
        return max(better, key=lambda c: c.variant_mean).variant_id
    if all(c.significant and c.control_mean > c.variant_mean for c in comparisons):
        return comparisons[0].control_id
    return None


class ResultAggregator:
    def __init__(
        self,
        registry: ExperimentRegistry,
        durable: DurableStore,
        counters: CounterStore,
        confidence: float = 0.95,
    ):
        self._registry = registry
        self._durable = durable
        self._counters = counters
        self._confidence = confidence

    def get_results(
        self,
        experiment_id: str,
        source: ResultSource | str = ResultSource.DURABLE,
    ) -> ExperimentResults:
        source = ResultSource(source)
        experiment = self._registry.load_by_id(experiment_id)

        if source is ResultSource.DURABLE:
            rows = self._durable.aggregate_results(experiment_id)
        else:
            rows = self._counters.snapshot(experiment_id)

        results = summarize(experiment, rows, self._confidence, source)
        logger.debug(
            "results_aggregated",
            experiment_id=experiment_id,
            source=source.value,
            cells=len(results.cells),
        )
        return results


def summarize(
    experiment: Experiment,
    rows: list[AggregateRow],
    confidence: float = 0.95,
    source: ResultSource = ResultSource.DURABLE,
) -> ExperimentResults:
    """Build cells, comparisons and winners for one experiment."""
    by_key = {(r.variant_id, r.metric_id): r for r in rows}

    # Declared (variant, metric) pairs first, in definition order, then any
    # pairs that only exist in the data (e.g. a variant removed since)
    keys = [
        (v.variant_id, m.metric_id)
        for v in experiment.variants
        for m in experiment.metrics
    ]
    declared = set(keys)
    keys += sorted(k for k in by_key if k not in declared)

    cells = []
    for variant_id, metric_id in keys:
        row = by_key.get((variant_id, metric_id))
        count = row.count if row else 0
        total = row.sum if row else 0.0
        cells.append(ResultCell(
            variant_id=variant_id,
            metric_id=metric_id,
            count=count,
            sum=total,
            average=total / count if count else 0.0,
        ))

    control_id = experiment.control.variant_id
    comparisons = []
    winners = {}
    for metric in experiment.metrics:
        metric_comparisons = [
            compare(
                metric.metric_id,
                control_id,
                by_key.get((control_id, metric.metric_id)),
                v.variant_id,
                by_key.get((v.variant_id, metric.metric_id)),
                confidence,
            )
            for v in experiment.variants[1:]
        ]
        comparisons.extend(metric_comparisons)
        winners[metric.metric_id] = pick_winner(metric_comparisons)

    return ExperimentResults(
        experiment_id=experiment.experiment_id,
        source=source,
        confidence=confidence,
        cells=cells,
        comparisons=comparisons,
        winners=winners,
    )
