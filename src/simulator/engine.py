"""Simulation engine that drives synthetic visitors through an experiment.

Each simulated visitor:
  request context -> get_variant -> click (maybe) -> purchase (maybe)

Clicks are tracked as the "clicked" metric (value 1) and purchases as the
"revenue" metric (basket value). Treatment visitors get a configurable
uplift to the click probability. All randomness is seeded, and assignment
itself is deterministic, so a run is fully reproducible.
"""

import random
from dataclasses import dataclass, field
from typing import Any

from src.ab.engine import ExperimentEngine
from src.simulator.config import SimulationConfig


@dataclass
class Visit:
    user_id: str | None
    context: dict[str, Any] = field(default_factory=dict)
    variant_id: str | None = None
    clicked: bool = False
    revenue: float = 0.0


def generate_contexts(config: SimulationConfig | None = None) -> list[dict[str, Any]]:
    """Generate one request context per simulated visitor."""
    if config is None:
        config = SimulationConfig()

    rng = random.Random(config.seed)
    contexts = []
    for i in range(config.num_users):
        context: dict[str, Any] = {
            "country": rng.choice(config.countries),
            "device": rng.choice(config.devices),
            "path": rng.choice(config.paths),
        }
        if rng.random() >= config.anonymous_share:
            context["subjectId"] = f"user_{i:05d}"
        contexts.append(context)
    return contexts


def run_simulation(
    engine: ExperimentEngine,
    experiment_name: str,
    config: SimulationConfig | None = None,
) -> list[Visit]:
    """Send every simulated visitor through the engine.

    Returns the visits in generation order.
    """
    if config is None:
        config = SimulationConfig()

    # Behaviour draws use their own stream so they don't depend on context generation
    rng = random.Random(config.seed + 1)
    visits = []
    for context in generate_contexts(config):
        visits.append(_simulate_visit(engine, experiment_name, context, config, rng))
    return visits


def _simulate_visit(
    engine: ExperimentEngine,
    experiment_name: str,
    context: dict[str, Any],
    config: SimulationConfig,
    rng: random.Random,
) -> Visit:
    visit = Visit(user_id=context.get("subjectId"), context=context)
    # Draws are taken up front so every visitor consumes the same amount of
    # randomness whatever the assignment
    click_roll, purchase_roll = rng.random(), rng.random()
    basket = rng.choices(config.basket_values, weights=config.basket_weights, k=1)[0]

    visit.variant_id = engine.get_variant(experiment_name, context)
    if visit.variant_id is None:
        return visit  # not eligible

    prob_click = config.prob_click
    if visit.variant_id == config.treatment_variant:
        prob_click = min(prob_click + config.treatment_uplift, 1.0)

    if click_roll >= prob_click:
        return visit  # dropped off before clicking

    visit.clicked = True
    engine.track_metric(experiment_name, "clicked", 1, context)

    if purchase_roll >= config.prob_purchase:
        return visit  # dropped off before purchase

    visit.revenue = basket
    engine.track_metric(experiment_name, "revenue", basket, context)
    return visit
