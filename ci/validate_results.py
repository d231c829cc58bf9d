"""CI validation: verify an exported experiment results file is complete and sane.

This script is the final gate in CI. It reads the results JSON written by
`python -m src.simulator.generate --export ...` and asserts structural and
arithmetic invariants. If anything is wrong, it exits non-zero and fails
the build.

Usage:
    python ci/validate_results.py
    python ci/validate_results.py --data data/results.json
"""

import argparse
import json
import math
import sys
from pathlib import Path

REQUIRED_TOP_KEYS = {"experiment_id", "source", "confidence", "cells", "comparisons", "winners"}
CELL_FIELDS = {"variant_id", "metric_id", "count", "sum", "average"}
COMPARISON_FIELDS = {
    "metric_id",
    "control_id",
    "variant_id",
    "control_mean",
    "variant_mean",
    "z_score",
    "p_value",
    "significant",
}


def validate(data: dict) -> list[str]:
    """Return a list of validation errors (empty = pass)."""
    errors = []

    # --- Top-level structure ---
    for key in sorted(REQUIRED_TOP_KEYS):
        if key not in data:
            errors.append(f"Missing top-level key: {key}")

    if errors:
        return errors  # Can't continue without structure

    if data["source"] not in ("durable", "live"):
        errors.append(f"Invalid source: {data['source']}")

    confidence = data["confidence"]
    if not 0 < confidence < 1:
        errors.append(f"Confidence out of range: {confidence}")

    # --- Cells ---
    cells = data["cells"]
    variant_ids = set()
    if not cells:
        errors.append("cells is empty, no results exported")
    for cell in cells:
        missing = CELL_FIELDS - set(cell)
        if missing:
            errors.append(f"Cell missing fields: {sorted(missing)}")
            continue

        label = f"{cell['variant_id']}/{cell['metric_id']}"
        variant_ids.add(cell["variant_id"])
        if cell["count"] < 0:
            errors.append(f"Cell {label} has negative count")
        elif cell["count"] == 0:
            if cell["sum"] != 0 or cell["average"] != 0:
                errors.append(f"Cell {label} is empty but has non-zero sum/average")
        else:
            expected = cell["sum"] / cell["count"]
            if not math.isclose(cell["average"], expected, rel_tol=1e-9, abs_tol=1e-9):
                errors.append(
                    f"Cell {label} average {cell['average']} != sum/count {expected}"
                )

    # --- Comparisons ---
    for comp in data["comparisons"]:
        missing = COMPARISON_FIELDS - set(comp)
        if missing:
            errors.append(f"Comparison missing fields: {sorted(missing)}")
            continue

        label = f"{comp['metric_id']}: {comp['variant_id']} vs {comp['control_id']}"
        p = comp["p_value"]
        if p is not None and (p < 0 or p > 1):
            errors.append(f"Comparison {label} p-value out of range: {p}")
        if comp["significant"] and p is None:
            errors.append(f"Comparison {label} is significant without a p-value")
        if comp["variant_id"] == comp["control_id"]:
            errors.append(f"Comparison {label} compares the control with itself")

    # --- Winners ---
    for metric_id, winner in data["winners"].items():
        if winner is not None and winner not in variant_ids:
            errors.append(f"Winner for {metric_id} is not a known variant: {winner}")

    return errors


def main() -> None:
    parser = argparse.ArgumentParser(description="Validate exported experiment results")
    parser.add_argument(
        "--data",
        default="data/results.json",
        help="Path to exported results JSON",
    )
    opts = parser.parse_args()

    path = Path(opts.data)
    if not path.exists():
        print(f"FAIL: {opts.data} not found. Run 'python -m src.simulator.generate --export {opts.data}' first.")
        sys.exit(1)

    data = json.loads(path.read_text())
    errors = validate(data)

    if errors:
        print(f"FAIL: {len(errors)} validation error(s):")
        for e in errors:
            print(f"  - {e}")
        sys.exit(1)

    # Print summary on success
    total = sum(cell["count"] for cell in data["cells"])
    print("PASS: Experiment results validated")
    print(f"  Experiment: {data['experiment_id']} ({data['source']})")
    print(f"  Observations: {total:,}")
    for metric_id, winner in data["winners"].items():
        print(f"  {metric_id}: winner={winner or 'none'}")


if __name__ == "__main__":
    main()
