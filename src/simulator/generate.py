"""CLI entrypoint: simulate checkout traffic through a live experiment.

Usage:
    python -m src.simulator.generate
    python -m src.simulator.generate --users 5000 --uplift 0.1
    python -m src.simulator.generate --redis-url redis://localhost:6379/0 --live
    python -m src.simulator.generate --export data/results.json
"""

import argparse
from pathlib import Path

from src.ab.config import EngineConfig
from src.ab.engine import ExperimentEngine
from src.ab.experiment import CHECKOUT_BUTTON_EXPERIMENT
from src.ab.log import configure_logging
from src.ab.results import ExperimentResults, ResultSource
from src.simulator.config import SimulationConfig
from src.simulator.engine import run_simulation
from src.warehouse.counters import LocalCounterStore, RedisCounterStore
from src.warehouse.db import DuckDBResultStore


def _print_results(results: ExperimentResults) -> None:
    print(f"Results ({results.source.value}, confidence {results.confidence:.0%}):")
    for cell in results.cells:
        print(
            f"  {cell.variant_id:<10} {cell.metric_id:<10} "
            f"count={cell.count:<6} sum={cell.sum:<12.2f} avg={cell.average:.3f}"
        )
    for c in results.comparisons:
        p = f"{c.p_value:.4f}" if c.p_value is not None else "n/a"
        flag = " *" if c.significant else ""
        print(f"  {c.metric_id}: {c.variant_id} vs {c.control_id} p={p}{flag}")
    for metric_id, winner in results.winners.items():
        print(f"  winner[{metric_id}]: {winner or 'none yet'}")


def main(args: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Simulate traffic through an A/B experiment")
    parser.add_argument("--users", type=int, default=2000, help="Number of visitors")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--uplift", type=float, default=0.05, help="Treatment click uplift")
    parser.add_argument("--db", type=str, default="data/experiments.duckdb", help="Database path")
    parser.add_argument("--redis-url", type=str, default=None, help="Counter store (default: in-process)")
    parser.add_argument("--live", action="store_true", help="Report from counters instead of the log")
    parser.add_argument("--confidence", type=float, default=0.95, help="Winner confidence threshold")
    parser.add_argument("--export", type=str, default=None, help="Write results JSON here")
    parser.add_argument("--log-level", type=str, default="WARNING", help="Log level")
    opts = parser.parse_args(args)

    configure_logging(opts.log_level)

    config = SimulationConfig(num_users=opts.users, seed=opts.seed, treatment_uplift=opts.uplift)
    engine_config = EngineConfig(confidence=opts.confidence)
    definition = CHECKOUT_BUTTON_EXPERIMENT

    store = DuckDBResultStore.open(opts.db)
    try:
        store.save_experiment(definition)
        if opts.redis_url:
            counters = RedisCounterStore.from_url(opts.redis_url, timeout=engine_config.store_timeout)
        else:
            counters = LocalCounterStore()

        print(f"Experiment: {definition.name} ({definition.id})")
        total_weight = sum(v.weight for v in definition.variants)
        for v in definition.variants:
            print(f"  {v.name}: {v.weight / total_weight:.0%} traffic")

        print(f"Simulating {config.num_users} visitors (seed={config.seed})...")
        with ExperimentEngine(store, counters, engine_config) as engine:
            visits = run_simulation(engine, definition.name, config)
            source = ResultSource.LIVE if opts.live else ResultSource.DURABLE
            results = engine.get_results(definition.id, source)

        assigned = sum(1 for v in visits if v.variant_id is not None)
        clicks = sum(1 for v in visits if v.clicked)
        print(f"Assigned: {assigned}, clicks: {clicks}")
        _print_results(results)

        if opts.export:
            path = Path(opts.export)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(results.model_dump_json(indent=2))
            print(f"\nExported results to {path}")
    finally:
        store.close()
    print("Done.")


if __name__ == "__main__":
    main()
