"""Pydantic schemas for data crossing the engine boundary.

ExperimentDefinition is what authoring tooling writes to the durable store.
ResultRecord is one metric observation, appended to the results log and
never modified afterwards.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Ids are embedded in counter keys ("exp:<experiment>:<variant>:<metric>")
# and must not need escaping there.
ID_PATTERN = r"^[A-Za-z0-9_.\-]+$"


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class MetricType(str, Enum):
    NUMERIC = "numeric"


class VariantSpec(BaseModel):
    id: str = Field(pattern=ID_PATTERN)
    name: str = Field(min_length=1)
    weight: float


class MetricSpec(BaseModel):
    id: str = Field(pattern=ID_PATTERN)
    name: str = Field(min_length=1)
    type: MetricType = MetricType.NUMERIC


class ExperimentDefinition(BaseModel):
    id: str = Field(pattern=ID_PATTERN)
    name: str = Field(min_length=1)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    # Targeting condition in JSON form, see src.ab.conditions
    targeting: dict[str, Any] | None = None
    variants: list[VariantSpec]
    metrics: list[MetricSpec] = Field(default_factory=list)


def _new_result_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResultRecord(BaseModel):
    result_id: str = Field(default_factory=_new_result_id)
    experiment_id: str
    variant_id: str
    metric_id: str
    value: float
    subject_id: str
    recorded_at: datetime = Field(default_factory=_utcnow)


class AggregateRow(BaseModel):
    """Grouped totals for one (variant, metric) pair."""

    variant_id: str
    metric_id: str
    count: int
    sum: float
    sum_sq: float = 0.0
