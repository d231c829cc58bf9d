"""Experiment definitions and metadata.

Each experiment has a unique ID and name, an ordered list of weighted
variants, optional targeting, and the metrics it tracks. Definitions are
validated once, when they are loaded, so assignment never sees a
structurally invalid experiment.
"""

import math
from dataclasses import dataclass

from pydantic import ValidationError

from src.ab.conditions import Condition, condition_to_dict, parse_condition
from src.ab.errors import InvalidExperiment
from src.collector.schemas import (
    ExperimentDefinition,
    ExperimentStatus,
    MetricSpec,
    MetricType,
    VariantSpec,
)


@dataclass(frozen=True)
class Variant:
    variant_id: str
    name: str
    weight: float  # Relative traffic share, not a percentage


@dataclass(frozen=True)
class Metric:
    metric_id: str
    name: str
    type: MetricType = MetricType.NUMERIC


@dataclass(frozen=True)
class Experiment:
    experiment_id: str
    name: str
    variants: tuple[Variant, ...]
    metrics: tuple[Metric, ...] = ()
    status: ExperimentStatus = ExperimentStatus.DRAFT
    targeting: Condition | None = None

    def __post_init__(self):
        if not self.variants:
            raise InvalidExperiment(f"Experiment {self.name} has no variants")
        for v in self.variants:
            if not math.isfinite(v.weight) or v.weight < 0:
                raise InvalidExperiment(
                    f"Variant {v.variant_id} has invalid weight {v.weight}"
                )
        total = sum(v.weight for v in self.variants)
        if total <= 0:
            raise InvalidExperiment(
                f"Experiment {self.name} total weight must be > 0, got {total}"
            )
        ids = [v.variant_id for v in self.variants]
        if len(ids) != len(set(ids)):
            raise InvalidExperiment("Variant ids must be unique")
        names = [m.name for m in self.metrics]
        if len(names) != len(set(names)):
            raise InvalidExperiment("Metric names must be unique")

    @property
    def weights(self) -> list[float]:
        return [v.weight for v in self.variants]

    @property
    def control(self) -> Variant:
        # The first variant is the baseline for comparisons
        return self.variants[0]

    @property
    def is_running(self) -> bool:
        return self.status is ExperimentStatus.RUNNING

    def metric(self, name: str) -> Metric | None:
        for m in self.metrics:
            if m.name == name:
                return m
        return None

    def variant(self, variant_id: str) -> Variant | None:
        for v in self.variants:
            if v.variant_id == variant_id:
                return v
        return None

    @classmethod
    def from_definition(cls, definition: ExperimentDefinition | dict) -> "Experiment":
        """Validate a stored definition and build an Experiment.

        Any schema or targeting problem surfaces as InvalidExperiment.
        """
        if not isinstance(definition, ExperimentDefinition):
            try:
                definition = ExperimentDefinition.model_validate(definition)
            except ValidationError as exc:
                raise InvalidExperiment(f"Malformed experiment definition: {exc}") from exc

        return cls(
            experiment_id=definition.id,
            name=definition.name,
            status=definition.status,
            targeting=parse_condition(definition.targeting),
            variants=tuple(
                Variant(variant_id=v.id, name=v.name, weight=v.weight)
                for v in definition.variants
            ),
            metrics=tuple(
                Metric(metric_id=m.id, name=m.name, type=m.type)
                for m in definition.metrics
            ),
        )

    def to_definition(self) -> ExperimentDefinition:
        return ExperimentDefinition(
            id=self.experiment_id,
            name=self.name,
            status=self.status,
            targeting=condition_to_dict(self.targeting),
            variants=[
                VariantSpec(id=v.variant_id, name=v.name, weight=v.weight)
                for v in self.variants
            ],
            metrics=[
                MetricSpec(id=m.metric_id, name=m.name, type=m.type)
                for m in self.metrics
            ],
        )


# Default experiment used by the simulator
CHECKOUT_BUTTON_EXPERIMENT = ExperimentDefinition(
    id="exp_checkout_button_v1",
    name="checkout-button-color",
    status=ExperimentStatus.RUNNING,
    variants=[
        VariantSpec(id="control", name="control", weight=1),
        VariantSpec(id="green", name="green", weight=1),
    ],
    metrics=[
        MetricSpec(id="clicked", name="clicked"),
        MetricSpec(id="revenue", name="revenue"),
    ],
)
