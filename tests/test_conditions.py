"""Tests for targeting condition parsing and evaluation."""

import re

import pytest

from src.ab.conditions import (
    And,
    Not,
    NumericRange,
    Operator,
    Or,
    Predicate,
    condition_to_dict,
    evaluate,
    parse_condition,
)
from src.ab.errors import InvalidExperiment


GERMAN_SPEAKING = {"key": "country", "op": "in", "value": ["DE", "AT", "CH"]}
MOBILE = {"key": "device", "op": "equals", "value": "mobile"}


class TestEvaluate:
    def test_none_condition_matches_everything(self):
        assert evaluate(None, {}) is True
        assert evaluate(None, {"country": "DE"}) is True

    def test_equals(self):
        cond = parse_condition(MOBILE)
        assert evaluate(cond, {"device": "mobile"})
        assert not evaluate(cond, {"device": "desktop"})

    def test_in_list(self):
        cond = parse_condition(GERMAN_SPEAKING)
        assert evaluate(cond, {"country": "AT"})
        assert not evaluate(cond, {"country": "FR"})

    def test_numeric_range_is_inclusive(self):
        cond = parse_condition({"key": "cart_total", "op": "range", "value": {"min": 50, "max": 500}})
        assert evaluate(cond, {"cart_total": 50})
        assert evaluate(cond, {"cart_total": 500.0})
        assert not evaluate(cond, {"cart_total": 49.99})
        assert not evaluate(cond, {"cart_total": 501})

    def test_open_ended_range(self):
        cond = parse_condition({"key": "age", "op": "range", "value": {"min": 18}})
        assert evaluate(cond, {"age": 99})
        assert not evaluate(cond, {"age": 17})

    def test_range_rejects_non_numbers(self):
        cond = parse_condition({"key": "age", "op": "range", "value": {"min": 0}})
        assert not evaluate(cond, {"age": "30"})
        assert not evaluate(cond, {"age": True})
        assert not evaluate(cond, {"age": float("nan")})

    def test_pattern_match_is_full_match(self):
        cond = parse_condition({"key": "path", "op": "matches", "value": r"/checkout(/.*)?"})
        assert evaluate(cond, {"path": "/checkout"})
        assert evaluate(cond, {"path": "/checkout/payment"})
        assert not evaluate(cond, {"path": "/cart/checkout"})

    def test_pattern_on_non_string_never_matches(self):
        cond = parse_condition({"key": "path", "op": "matches", "value": ".*"})
        assert not evaluate(cond, {"path": 42})

    def test_and_or_not(self):
        cond = parse_condition({"and": [GERMAN_SPEAKING, {"not": MOBILE}]})
        assert evaluate(cond, {"country": "DE", "device": "desktop"})
        assert not evaluate(cond, {"country": "DE", "device": "mobile"})
        assert not evaluate(cond, {"country": "FR", "device": "desktop"})

        either = parse_condition({"or": [GERMAN_SPEAKING, MOBILE]})
        assert evaluate(either, {"country": "FR", "device": "mobile"})
        assert not evaluate(either, {"country": "FR", "device": "tablet"})

    def test_empty_and_or(self):
        assert evaluate(And(()), {})
        assert not evaluate(Or(()), {})


class TestFailClosed:
    @pytest.mark.parametrize("raw", [
        MOBILE,
        GERMAN_SPEAKING,
        {"key": "age", "op": "range", "value": {"min": 0}},
        {"key": "path", "op": "matches", "value": ".*"},
    ])
    def test_missing_key_never_matches(self, raw):
        assert evaluate(parse_condition(raw), {}) is False

    def test_none_value_counts_as_missing(self):
        cond = parse_condition({"key": "device", "op": "equals", "value": None})
        assert evaluate(cond, {"device": None}) is False

    def test_missing_key_fails_whole_conjunction(self):
        cond = parse_condition({"and": [GERMAN_SPEAKING, MOBILE]})
        assert not evaluate(cond, {"country": "DE"})

    def test_malformed_hand_built_predicates_do_not_raise(self):
        bad = [
            Predicate("x", Operator.IN, 5),                   # operand not iterable
            Predicate("x", Operator.MATCHES, "("),            # invalid pattern
            Predicate("x", Operator.RANGE, NumericRange(min=1)),
        ]
        for cond in bad:
            assert evaluate(cond, {"x": "value"}) is False

    def test_unhashable_context_value(self):
        cond = parse_condition(GERMAN_SPEAKING)
        assert evaluate(cond, {"country": ["DE"]}) is False

    def test_unknown_node_type_never_matches(self):
        assert evaluate(object(), {"x": 1}) is False


class TestParse:
    def test_builds_tagged_tree(self):
        cond = parse_condition({"or": [MOBILE, {"not": GERMAN_SPEAKING}]})
        assert isinstance(cond, Or)
        assert isinstance(cond.children[0], Predicate)
        assert isinstance(cond.children[1], Not)
        assert cond.children[1].child.operand == ("DE", "AT", "CH")

    def test_pattern_is_compiled(self):
        cond = parse_condition({"key": "path", "op": "matches", "value": "/p/.*"})
        assert isinstance(cond.operand, re.Pattern)

    @pytest.mark.parametrize("raw", [
        {"key": "x", "op": "contains", "value": 1},
        {"op": "equals", "value": 1},
        {"key": "x", "op": "in", "value": "DE"},
        {"key": "x", "op": "range", "value": {}},
        {"key": "x", "op": "range", "value": {"min": "a"}},
        {"key": "x", "op": "range", "value": {"min": 5, "max": 1}},
        {"key": "x", "op": "matches", "value": "("},
        {"and": MOBILE},
        {"or": [None]},
        {"not": None},
        ["not", "a", "dict"],
    ])
    def test_malformed_conditions_rejected(self, raw):
        with pytest.raises(InvalidExperiment):
            parse_condition(raw)

    def test_to_dict_round_trips(self):
        raw = {
            "and": [
                GERMAN_SPEAKING,
                {"not": MOBILE},
                {"key": "cart_total", "op": "range", "value": {"min": 10.0}},
                {"key": "path", "op": "matches", "value": "/checkout.*"},
            ]
        }
        assert condition_to_dict(parse_condition(raw)) == raw
        assert condition_to_dict(None) is None
