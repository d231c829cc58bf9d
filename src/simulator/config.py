"""Simulation parameters for storefront checkout traffic.

These numbers model visitors reaching the checkout page:
  visit -> click checkout button -> purchase

Rates are calibrated to produce enough clicks for the significance
estimate while remaining realistic.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class SimulationConfig:
    num_users: int = 2000
    # Random seed for reproducibility
    seed: int = 42

    # Funnel step probabilities (conditional on reaching previous step)
    prob_click: float = 0.25         # 25% of visitors click the checkout button
    prob_purchase: float = 0.40      # 40% of clickers complete the purchase
    treatment_uplift: float = 0.05   # +5pp click rate for the treatment variant
    treatment_variant: str = "green"

    # Share of visitors browsing without an account (no subject id)
    anonymous_share: float = 0.0

    # Request context attributes, used by targeting conditions
    countries: tuple[str, ...] = ("DE", "AT", "CH", "FR", "NL")
    devices: tuple[str, ...] = ("desktop", "mobile", "tablet")
    paths: tuple[str, ...] = (
        "/checkout",
        "/cart",
        "/products/phones",
        "/products/tablets",
    )

    # Order values
    basket_values: tuple[float, ...] = (49.0, 199.0, 649.0)
    # Weighted toward cheaper baskets
    basket_weights: tuple[float, ...] = (0.6, 0.3, 0.1)
