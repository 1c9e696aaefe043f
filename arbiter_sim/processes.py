"""
Synthetic price processes.

A `PricePath` is a lazy, finite, restartable sequence of `PricePoint`s
drawn from either a Geometric Brownian Motion or an Ornstein-Uhlenbeck
process. Every call to `iter()` rebuilds the generator from the configured
seed, so the same config always yields a bit-identical path.

    GBM:  S_{t+dt} = S_t * exp((mu - sigma^2/2) dt + sigma sqrt(dt) Z)
    OU:   S_{t+dt} = S_t + theta (m - S_t) dt + sigma sqrt(dt) Z

with Z ~ N(0, 1) from `numpy.random.default_rng(seed)`.
"""
from __future__ import annotations

import dataclasses
import math
from typing import Iterator, Optional

import numpy as np

from .config import PROCESS_KINDS, SimulationConfig
from .errors import InvalidConfig
from .records import PricePoint
from .utils import EPS_STEPS


def num_steps(config: SimulationConfig) -> int:
    """floor(horizon / time_step), robust to ratios like 1.0 / 0.1."""
    return int(math.floor(config.horizon / config.time_step + EPS_STEPS))


class PricePath:
    """Discretized price path for one `SimulationConfig`."""

    def __init__(self, config: SimulationConfig):
        try:
            self.config = config.validate()
        except InvalidConfig as exc:
            exc.component, exc.operation = "process", "generate"
            raise
        self.steps = num_steps(config)

    def __len__(self) -> int:
        return self.steps

    def __iter__(self) -> Iterator[PricePoint]:
        cfg = self.config
        rng = np.random.default_rng(cfg.seed)
        dt = cfg.time_step
        sqrt_dt = math.sqrt(dt)
        sigma = cfg.volatility
        S = cfg.initial_price

        if cfg.process == "GBM":
            drift_dt = (cfg.drift - 0.5 * sigma ** 2) * dt
            for k in range(1, self.steps + 1):
                z = rng.standard_normal()
                S = S * math.exp(drift_dt + sigma * sqrt_dt * z)
                yield PricePoint(step=k, price=float(S))
        else:
            theta = cfg.mean_reversion_rate
            m = cfg.mean_level
            for k in range(1, self.steps + 1):
                z = rng.standard_normal()
                S = S + theta * (m - S) * dt + sigma * sqrt_dt * z
                yield PricePoint(step=k, price=float(S))

    def prices(self) -> np.ndarray:
        return np.fromiter((p.price for p in self), dtype=float, count=self.steps)


def generate_price_path(config: SimulationConfig, process: Optional[str] = None) -> PricePath:
    """Build a `PricePath`, optionally overriding the configured process kind."""
    if process is not None:
        kind = process.upper()
        if kind not in PROCESS_KINDS:
            raise InvalidConfig(f"unknown process '{process}'", component="process", operation="generate")
        config = dataclasses.replace(config, process=kind)
    return PricePath(config)
