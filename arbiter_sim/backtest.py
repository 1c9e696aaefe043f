"""
Backtest comparison: replay the prices observed in a dataset through a fresh
AMM model and summarize how the model's flows compare with the observed ones.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .amm import build_amm
from .config import AppConfig
from .engine import EngineState, SimulationEngine, SimulationResult
from .records import BacktestDataset, PricePoint


@dataclass
class BacktestReport:
    count: int
    block_span: Optional[Tuple[int, int]]
    price_min: Optional[float]
    price_max: Optional[float]
    price_last: Optional[float]
    observed_volume_in: Dict[str, float] = field(default_factory=dict)
    model_volume_in: Dict[str, float] = field(default_factory=dict)
    model_state: EngineState = EngineState.IDLE
    model_failed_step: Optional[int] = None
    model_error: Optional[str] = None
    amm_variant: str = ""

    def lines(self):
        yield f"records          : {self.count}"
        if self.block_span is not None:
            yield f"block span       : {self.block_span[0]} .. {self.block_span[1]}"
        if self.price_last is not None:
            yield f"observed price   : min {self.price_min:.6g}  max {self.price_max:.6g}  last {self.price_last:.6g}"
        for asset, vol in sorted(self.observed_volume_in.items()):
            yield f"observed in      : {vol:.6g} {asset}"
        for asset, vol in sorted(self.model_volume_in.items()):
            yield f"model[{self.amm_variant}] in : {vol:.6g} {asset}"
        status = self.model_state.value
        if self.model_failed_step is not None:
            status += f" at record {self.model_failed_step} ({self.model_error})"
        yield f"model run        : {status}"


def _volume_in(records) -> Dict[str, float]:
    vol: Dict[str, float] = defaultdict(float)
    for rec in records:
        vol[rec.asset_in] += rec.amount_in
    return dict(vol)


def compare_dataset(dataset: BacktestDataset, config: AppConfig, amm_variant: Optional[str] = None) -> BacktestReport:
    """
    Seed the model at the first observed price and replay every record's
    resulting price in dataset order (record i is model step i + 1).
    """
    variant = amm_variant or config.simulation.amm_variant
    prices = [rec.resulting_price for rec in dataset]
    report = BacktestReport(
        count=len(dataset),
        block_span=dataset.block_span,
        price_min=min(prices) if prices else None,
        price_max=max(prices) if prices else None,
        price_last=prices[-1] if prices else None,
        observed_volume_in=_volume_in(dataset),
        amm_variant=variant,
    )
    if not prices:
        return report

    amm = build_amm(config, variant, price=prices[0])
    points = [PricePoint(step=i + 1, price=p) for i, p in enumerate(prices)]
    result: SimulationResult = SimulationEngine(config, amm=amm, amm_variant=variant).run(points)

    report.model_volume_in = _volume_in(result.records)
    report.model_state = result.state
    report.model_failed_step = result.failed_step
    report.model_error = result.error.message if result.error is not None else None
    return report
