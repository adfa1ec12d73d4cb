"""
simulation.py - Seeded valuation paths for driving the engine

Generates gross-valuation paths for the NAV oracle with a geometric
Brownian motion:

    V(t+dt) = V(t) * exp((mu - 0.5*sigma^2)*dt + sigma*sqrt(dt)*Z),  Z ~ N(0,1)

dt is the step length as a fraction of a 365-day year. The random draw is
float; each observation is admitted into Decimal at 6 places before it
reaches the ledger.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Tuple

import numpy as np

from .core import InvalidValue
from .fixed_point import ASSET_DECIMAL_PLACES, quantize_amount
from .oracle import TimeSeriesValuationSource


DAYS_PER_YEAR = 365.0


def generate_gbm_path(
    start_value: Decimal,
    start_date: datetime,
    num_steps: int,
    volatility: float,
    drift: float = 0.0,
    step: timedelta = timedelta(days=1),
    seed: int = 42,
) -> List[Tuple[datetime, Decimal]]:
    """
    Generate a valuation path of num_steps observations (the first is start_value).

    Args:
        start_value: Gross valuation at start_date
        start_date: Time of the first observation
        num_steps: Number of observations
        volatility: Annualized volatility (e.g., 0.10 for 10%)
        drift: Annualized drift
        step: Spacing between observations
        seed: Seed for numpy's default_rng

    Returns:
        List of (datetime, Decimal) tuples for TimeSeriesValuationSource
    """
    if num_steps < 1:
        raise InvalidValue(f"num_steps must be >= 1, got {num_steps}")
    if volatility < 0:
        raise InvalidValue(f"volatility must be >= 0, got {volatility}")
    if start_value <= 0:
        raise InvalidValue(f"start_value must be positive, got {start_value}")

    rng = np.random.default_rng(seed)
    dt = step.total_seconds() / (DAYS_PER_YEAR * 86400.0)
    z = rng.standard_normal(num_steps - 1)
    log_returns = (drift - 0.5 * volatility ** 2) * dt + volatility * np.sqrt(dt) * z
    growth = np.concatenate(([1.0], np.exp(np.cumsum(log_returns))))

    start = float(start_value)
    path = []
    for i, factor in enumerate(growth):
        value = quantize_amount(repr(float(start * factor)), ASSET_DECIMAL_PLACES)
        path.append((start_date + step * i, value))
    return path


def generate_valuation_source(
    start_value: Decimal,
    start_date: datetime,
    num_steps: int,
    volatility: float,
    drift: float = 0.0,
    step: timedelta = timedelta(days=1),
    seed: int = 42,
) -> TimeSeriesValuationSource:
    """generate_gbm_path() wrapped in a TimeSeriesValuationSource."""
    return TimeSeriesValuationSource(
        generate_gbm_path(start_value, start_date, num_steps, volatility, drift, step, seed)
    )


def perturb_pool_price(price: Decimal, max_deviation_bps: int, seed: int = 0) -> Decimal:
    """
    Shift a price by a uniform random deviation in [-max_deviation_bps, +max_deviation_bps].

    Used to knock a pool off NAV in convergence runs.
    """
    rng = np.random.default_rng(seed)
    deviation = int(rng.integers(-max_deviation_bps, max_deviation_bps + 1))
    return price * (Decimal(1) + Decimal(deviation) / Decimal(10000))
