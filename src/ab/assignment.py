"""Deterministic A/B experiment assignment.

Assignment is hash-based: given the same (experiment_id, subject_id) pair
and unchanged weights, the subject always gets the same variant. No
randomness involved: the hash output is mapped to variant buckets based
on configured weights.

This guarantees:
- Consistency: same subject always sees the same variant
- Reproducibility: assignments can be verified independently, in any language
- No coordination: no store lookups needed for assignment

Subjects without a stable id are assigned under a single fallback id, so
all anonymous traffic shares one bucket. This is a known limitation;
randomizing instead would give the same anonymous session a different
variant on every request.
"""

import hashlib
from typing import Any, Iterable, Mapping, Sequence

from src.ab.conditions import evaluate
from src.ab.errors import InvalidExperiment
from src.ab.experiment import Experiment, Variant

# Width of the digest prefix interpreted as the bucket value.
# Changing this reshuffles every running experiment.
PREFIX_BYTES = 4
BUCKET_SPACE = 2 ** (8 * PREFIX_BYTES)


def bucket_value(experiment_id: str, subject_id: str) -> int:
    """First 4 bytes (big-endian) of SHA-256("<experiment_id>:<subject_id>")."""
    hash_input = f"{experiment_id}:{subject_id}"
    digest = hashlib.sha256(hash_input.encode("utf-8")).digest()
    return int.from_bytes(digest[:PREFIX_BYTES], "big")


def assign(experiment_id: str, subject_id: str, weights: Sequence[float]) -> int:
    """Map a subject to a variant index.

    Walks the cumulative weights and returns the first index whose
    cumulative sum reaches the subject's position in [0, total_weight).
    Zero-weight variants never receive traffic.
    """
    if not weights:
        raise InvalidExperiment(f"Experiment {experiment_id} has no variants")
    if any(w < 0 for w in weights):
        raise InvalidExperiment(f"Experiment {experiment_id} has negative weights")
    total = sum(weights)
    if total <= 0:
        raise InvalidExperiment(
            f"Experiment {experiment_id} total weight must be > 0, got {total}"
        )

    position = (bucket_value(experiment_id, subject_id) / BUCKET_SPACE) * total

    cumulative = 0.0
    last_eligible = 0
    for index, weight in enumerate(weights):
        if weight <= 0:
            continue
        cumulative += weight
        last_eligible = index
        if position <= cumulative:
            return index

    # Floating point edge: position rounded past the final partial sum
    return last_eligible


def assign_variant(experiment: Experiment, subject_id: str) -> Variant:
    """Assign a subject to one of the experiment's variants."""
    index = assign(experiment.experiment_id, subject_id, experiment.weights)
    return experiment.variants[index]


def subject_from_context(
    context: Mapping[str, Any],
    subject_keys: Iterable[str],
    anonymous_subject: str | None,
) -> str | None:
    """Pick the subject id from the request context.

    Falls back to anonymous_subject when no key holds a usable id.
    """
    for key in subject_keys:
        value = context.get(key)
        if value is not None and value != "":
            return str(value)
    return anonymous_subject


def resolve_variant(
    experiment: Experiment,
    context: Mapping[str, Any],
    subject_keys: Iterable[str] = ("subjectId", "userId"),
    anonymous_subject: str | None = "anonymous",
) -> Variant | None:
    """Resolve the variant a request context is assigned to.

    Returns None when the experiment is not running, the context fails the
    targeting condition, or there is no subject to assign.
    """
    if not experiment.is_running:
        return None
    if not evaluate(experiment.targeting, context):
        return None
    subject_id = subject_from_context(context, subject_keys, anonymous_subject)
    if subject_id is None:
        return None
    return assign_variant(experiment, subject_id)
