"""Targeting conditions.

A condition is a small tree of And / Or / Not nodes with Predicate leaves.
Evaluation is pure and total: it never raises, and a predicate whose key is
missing from the request context is False, so targeting can only exclude
traffic it cannot see.

JSON form (as stored in experiment definitions):

    {"and": [c1, c2]}  {"or": [c1, c2]}  {"not": c}
    {"key": "country", "op": "in", "value": ["DE", "AT"]}
"""

import math
import re
from dataclasses import dataclass
from enum import Enum
from functools import singledispatch
from typing import Any, Mapping

from src.ab.errors import InvalidExperiment


class Operator(str, Enum):
    EQUALS = "equals"
    IN = "in"
    RANGE = "range"
    MATCHES = "matches"


@dataclass(frozen=True)
class NumericRange:
    # Inclusive bounds; None means unbounded on that side
    min: float | None = None
    max: float | None = None


@dataclass(frozen=True)
class Predicate:
    key: str
    operator: Operator
    # EQUALS: any value, IN: tuple, RANGE: NumericRange, MATCHES: re.Pattern
    operand: Any


@dataclass(frozen=True)
class And:
    children: tuple["Condition", ...]


@dataclass(frozen=True)
class Or:
    children: tuple["Condition", ...]


@dataclass(frozen=True)
class Not:
    child: "Condition"


Condition = And | Or | Not | Predicate


def evaluate(condition: Condition | None, context: Mapping[str, Any]) -> bool:
    """Return True if the context satisfies the condition.

    A None condition matches everything.
    """
    if condition is None:
        return True
    return _eval(condition, context)


@singledispatch
def _eval(condition, context) -> bool:
    # Unknown node types never match
    return False


@_eval.register
def _(condition: And, context) -> bool:
    return all(_eval(c, context) for c in condition.children)


@_eval.register
def _(condition: Or, context) -> bool:
    return any(_eval(c, context) for c in condition.children)


@_eval.register
def _(condition: Not, context) -> bool:
    return not _eval(condition.child, context)


@_eval.register
def _(condition: Predicate, context) -> bool:
    value = context.get(condition.key)
    if value is None:
        return False

    op = condition.operator
    operand = condition.operand
    try:
        if op is Operator.EQUALS:
            return value == operand
        if op is Operator.IN:
            return value in operand
        if op is Operator.RANGE:
            return _in_range(value, operand)
        if op is Operator.MATCHES:
            if not isinstance(value, str):
                return False
            return re.fullmatch(operand, value) is not None
    except (TypeError, ValueError, re.error):
        return False
    return False


def _in_range(value: Any, bounds: NumericRange) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if math.isnan(value):
        return False
    if bounds.min is not None and value < bounds.min:
        return False
    if bounds.max is not None and value > bounds.max:
        return False
    return True


# --- JSON form ---

def parse_condition(raw: Mapping[str, Any] | None) -> Condition | None:
    """Build a condition tree from its JSON form.

    Raises InvalidExperiment for malformed trees, so bad targeting is
    rejected when a definition is loaded rather than at request time.
    """
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise InvalidExperiment(f"Condition must be an object, got {type(raw).__name__}")

    if "and" in raw:
        return And(tuple(_parse_children(raw["and"], "and")))
    if "or" in raw:
        return Or(tuple(_parse_children(raw["or"], "or")))
    if "not" in raw:
        child = parse_condition(raw["not"])
        if child is None:
            raise InvalidExperiment("'not' requires a condition")
        return Not(child)
    return _parse_predicate(raw)


def _parse_children(raw: Any, node: str) -> list[Condition]:
    if not isinstance(raw, list):
        raise InvalidExperiment(f"'{node}' requires a list of conditions")
    children = []
    for item in raw:
        child = parse_condition(item)
        if child is None:
            raise InvalidExperiment(f"'{node}' children must not be null")
        children.append(child)
    return children


def _parse_predicate(raw: Mapping[str, Any]) -> Predicate:
    key = raw.get("key")
    if not isinstance(key, str) or not key:
        raise InvalidExperiment(f"Predicate requires a non-empty 'key': {dict(raw)}")
    try:
        op = Operator(raw.get("op"))
    except ValueError:
        raise InvalidExperiment(f"Unknown operator: {raw.get('op')!r}") from None
    value = raw.get("value")

    if op is Operator.IN:
        if not isinstance(value, (list, tuple)):
            raise InvalidExperiment(f"'in' on {key} requires a list")
        return Predicate(key, op, tuple(value))

    if op is Operator.RANGE:
        if not isinstance(value, Mapping) or not ({"min", "max"} & set(value)):
            raise InvalidExperiment(f"'range' on {key} requires 'min' and/or 'max'")
        bounds = NumericRange(min=_bound(value.get("min"), key), max=_bound(value.get("max"), key))
        if bounds.min is not None and bounds.max is not None and bounds.min > bounds.max:
            raise InvalidExperiment(f"'range' on {key} has min > max")
        return Predicate(key, op, bounds)

    if op is Operator.MATCHES:
        if not isinstance(value, str):
            raise InvalidExperiment(f"'matches' on {key} requires a pattern string")
        try:
            return Predicate(key, op, re.compile(value))
        except re.error as exc:
            raise InvalidExperiment(f"Invalid pattern for {key}: {exc}") from exc

    return Predicate(key, op, value)


def _bound(value: Any, key: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidExperiment(f"'range' bounds on {key} must be numbers")
    return float(value)


def condition_to_dict(condition: Condition | None) -> dict | None:
    """Inverse of parse_condition."""
    if condition is None:
        return None
    if isinstance(condition, And):
        return {"and": [condition_to_dict(c) for c in condition.children]}
    if isinstance(condition, Or):
        return {"or": [condition_to_dict(c) for c in condition.children]}
    if isinstance(condition, Not):
        return {"not": condition_to_dict(condition.child)}

    operand = condition.operand
    if condition.operator is Operator.IN:
        operand = list(operand)
    elif condition.operator is Operator.RANGE:
        operand = {k: v for k, v in (("min", operand.min), ("max", operand.max)) if v is not None}
    elif condition.operator is Operator.MATCHES:
        operand = operand.pattern if isinstance(operand, re.Pattern) else operand
    return {"key": condition.key, "op": condition.operator.value, "value": operand}
