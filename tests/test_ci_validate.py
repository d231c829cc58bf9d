"""Tests for CI results validation script."""

from ci.validate_results import validate
from src.ab.experiment import Experiment, CHECKOUT_BUTTON_EXPERIMENT
from src.ab.results import summarize
from src.collector.schemas import AggregateRow


def _valid_data():
    """Return minimal valid exported results."""
    return {
        "experiment_id": "exp_1",
        "source": "durable",
        "confidence": 0.95,
        "cells": [
            {"variant_id": "control", "metric_id": "clicked", "count": 1000, "sum": 100.0, "average": 0.1},
            {"variant_id": "green", "metric_id": "clicked", "count": 1000, "sum": 150.0, "average": 0.15},
        ],
        "comparisons": [
            {
                "metric_id": "clicked",
                "control_id": "control",
                "variant_id": "green",
                "control_mean": 0.1,
                "variant_mean": 0.15,
                "z_score": 3.39,
                "p_value": 0.0007,
                "significant": True,
            }
        ],
        "winners": {"clicked": "green"},
    }


class TestValidate:
    def test_valid_data_passes(self):
        errors = validate(_valid_data())
        assert errors == []

    def test_exported_results_pass(self):
        experiment = Experiment.from_definition(CHECKOUT_BUTTON_EXPERIMENT)
        rows = [
            AggregateRow(variant_id="control", metric_id="clicked", count=3, sum=3, sum_sq=3),
            AggregateRow(variant_id="green", metric_id="revenue", count=2, sum=248, sum_sq=42002),
        ]
        data = summarize(experiment, rows).model_dump(mode="json")
        assert validate(data) == []

    def test_missing_top_level_key(self):
        data = _valid_data()
        del data["cells"]
        errors = validate(data)
        assert any("Missing top-level key: cells" in e for e in errors)

    def test_invalid_source(self):
        data = _valid_data()
        data["source"] = "guess"
        errors = validate(data)
        assert any("Invalid source" in e for e in errors)

    def test_confidence_out_of_range(self):
        data = _valid_data()
        data["confidence"] = 1.5
        errors = validate(data)
        assert any("Confidence out of range" in e for e in errors)

    def test_empty_cells(self):
        data = _valid_data()
        data["cells"] = []
        data["winners"] = {}
        errors = validate(data)
        assert any("cells is empty" in e for e in errors)

    def test_average_mismatch(self):
        data = _valid_data()
        data["cells"][0]["average"] = 0.2
        errors = validate(data)
        assert any("!= sum/count" in e for e in errors)

    def test_empty_cell_with_sum(self):
        data = _valid_data()
        data["cells"][0].update(count=0, sum=5.0, average=0.0)
        errors = validate(data)
        assert any("non-zero sum/average" in e for e in errors)

    def test_negative_count(self):
        data = _valid_data()
        data["cells"][0]["count"] = -1
        errors = validate(data)
        assert any("negative count" in e for e in errors)

    def test_cell_missing_fields(self):
        data = _valid_data()
        del data["cells"][0]["average"]
        errors = validate(data)
        assert any("Cell missing fields" in e for e in errors)

    def test_invalid_p_value(self):
        data = _valid_data()
        data["comparisons"][0]["p_value"] = 1.5
        errors = validate(data)
        assert any("p-value out of range" in e for e in errors)

    def test_significant_without_p_value(self):
        data = _valid_data()
        data["comparisons"][0]["p_value"] = None
        errors = validate(data)
        assert any("without a p-value" in e for e in errors)

    def test_control_compared_with_itself(self):
        data = _valid_data()
        data["comparisons"][0]["variant_id"] = "control"
        errors = validate(data)
        assert any("with itself" in e for e in errors)

    def test_unknown_winner(self):
        data = _valid_data()
        data["winners"]["clicked"] = "purple"
        errors = validate(data)
        assert any("not a known variant" in e for e in errors)
