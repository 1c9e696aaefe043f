"""
Simulation engine: steps a price path and an AMM model together.

State machine: IDLE -> RUNNING -> {COMPLETED, FAILED}. Steps run strictly in
order; step n+1 only starts once step n's TradeRecord is committed, because
the reserves it quotes against are the ones step n left behind. The engine
owns its AMM for the lifetime of the run.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from tqdm import tqdm

from .amm import AMMModel, ReserveState, build_amm
from .config import AppConfig
from .errors import ArbiterError, InsufficientLiquidity, InvalidConfig
from .processes import PricePath
from .records import PricePoint, TradeRecord


class EngineState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SimulationResult:
    state: EngineState
    amm_variant: str
    records: List[TradeRecord] = field(default_factory=list)
    reserve_states: List[ReserveState] = field(default_factory=list)
    failed_step: Optional[int] = None
    error: Optional[ArbiterError] = None

    @property
    def completed(self) -> bool:
        return self.state is EngineState.COMPLETED

    @property
    def prices(self) -> List[float]:
        return [r.resulting_price for r in self.records]

    def raise_for_failure(self) -> None:
        if self.error is not None:
            raise self.error


class SimulationEngine:
    """
    Runs one simulation: for every PricePoint, `quote` then `apply` on the AMM
    and commit one TradeRecord. A failing step moves the engine to FAILED with
    the step index and error; records committed so far stay in the result.
    """

    def __init__(self, config: AppConfig, amm: Optional[AMMModel] = None, amm_variant: Optional[str] = None):
        self.config = config
        self.amm_variant = amm_variant or config.simulation.amm_variant
        self._amm = amm
        self.state = EngineState.IDLE
        self.result: Optional[SimulationResult] = None

    def run(self, points: Optional[Iterable[PricePoint]] = None, progress: bool = False) -> SimulationResult:
        if self.state is not EngineState.IDLE:
            raise RuntimeError(f"engine already {self.state.value}; build a new engine per run")

        result = SimulationResult(state=EngineState.RUNNING, amm_variant=self.amm_variant)
        self.result = result
        self.state = EngineState.RUNNING
        step: Optional[int] = None
        try:
            if points is None:
                points = PricePath(self.config.simulation)
            amm = self._amm if self._amm is not None else build_amm(self.config, self.amm_variant)
            self._amm = amm

            total = len(points) if hasattr(points, "__len__") else None
            for point in tqdm(points, total=total, desc=f"simulate[{self.amm_variant}]",
                              disable=not progress, leave=False):
                step = point.step
                trade = amm.quote(point.price)
                new_state = amm.apply(trade)
                result.records.append(TradeRecord(
                    block_or_step=point.step,
                    amount_in=trade.amount_in,
                    amount_out=trade.amount_out,
                    asset_in=trade.asset_in,
                    asset_out=trade.asset_out,
                    resulting_price=new_state.price,
                ))
                result.reserve_states.append(new_state)
        except InsufficientLiquidity as exc:
            result.failed_step = step
            exc.at_step(step)
            result.error = exc
            self.state = result.state = EngineState.FAILED
            return result
        except InvalidConfig as exc:
            result.failed_step = step
            result.error = exc
            self.state = result.state = EngineState.FAILED
            return result

        self.state = result.state = EngineState.COMPLETED
        return result

    @property
    def amm(self) -> Optional[AMMModel]:
        return self._amm


def simulate(
    config: AppConfig,
    amm_variant: Optional[str] = None,
    points: Optional[Iterable[PricePoint]] = None,
    progress: bool = False,
) -> SimulationResult:
    """Run one simulation of `config` against a freshly built AMM."""
    return SimulationEngine(config, amm_variant=amm_variant).run(points=points, progress=progress)
