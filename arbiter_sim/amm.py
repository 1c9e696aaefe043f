"""
AMM model adapters.

Every variant exposes the same capability set and nothing else:

  • quote(candidate_price) -> ImpliedTrade
      the trade that moves the pool to `candidate_price`; pure, no mutation.
  • apply(trade) -> ReserveState
      execute `trade` against the reserves and return the new state. Atomic:
      on `InsufficientLiquidity` the reserves are left untouched.

Variants are self-contained dataclasses selected at configuration time by
`build_amm` (no shared base class):

  • PortfolioAMM: RMM-01 covered-call curve (Primitive "Portfolio"). Per unit
    of liquidity, x ∈ (0, 1) risky and y ∈ (0, K) stable satisfy

        k = y − K·Φ(Φ⁻¹(1 − x) − σ√τ),      P(x) = K·exp(Φ⁻¹(1 − x)·σ√τ − σ²τ/2)

    The fee is charged on input and retained in the reserves, so k never
    decreases across fee-inclusive trades.

  • UniswapV3AMM: concentrated liquidity on the tick grid (see V3Pool). The
    fee is charged on input and accrued outside the curve.
"""
from __future__ import annotations

import copy
import math
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from scipy import stats

from .config import AMM_VARIANTS, AppConfig, PairConfig, PortfolioConfig, UniswapConfig
from .errors import InsufficientLiquidity, InvalidConfig
from .uniswapv3_pool import V3Pool

RESERVE_TOL = 1e-9


@dataclass(frozen=True)
class ImpliedTrade:
    asset_in: str
    asset_out: str
    amount_in: float
    amount_out: float
    resulting_price: float

    @property
    def is_empty(self) -> bool:
        return self.amount_in <= 0.0 and self.amount_out <= 0.0


@dataclass(frozen=True)
class PortfolioState:
    reserve_risky: float
    reserve_stable: float
    liquidity: float
    invariant: float
    price: float


@dataclass(frozen=True)
class UniswapV3State:
    sqrt_price: float
    price: float
    tick: int
    active_liquidity: float
    reserve0: float
    reserve1: float
    fees0: float
    fees1: float


ReserveState = Union[PortfolioState, UniswapV3State]


class AMMModel(Protocol):
    name: str

    def quote(self, candidate_price: float) -> ImpliedTrade: ...

    def apply(self, trade: ImpliedTrade) -> ReserveState: ...

    @property
    def state(self) -> ReserveState: ...

    @property
    def price(self) -> float: ...


def _check_candidate(candidate_price: float, component: str) -> None:
    if not math.isfinite(candidate_price) or candidate_price <= 0.0:
        raise InsufficientLiquidity(
            f"price {candidate_price!r} outside the curve domain", component=component, operation="quote"
        )


# =============================================================================
# Portfolio (RMM-01)
# =============================================================================

@dataclass
class PortfolioAMM:
    strike: float
    sigma: float
    tau: float
    fee: float
    liquidity: float
    reserve_risky: float
    reserve_stable: float
    token0: str = "token0"
    token1: str = "token1"
    name: str = "Portfolio"

    @classmethod
    def from_price(cls, price: float, params: PortfolioConfig, pair: PairConfig) -> "PortfolioAMM":
        """Seed a pool whose reserves sit on the curve (k = 0) at `price`."""
        amm = cls(strike=params.strike, sigma=params.sigma, tau=params.tau, fee=params.fee,
                  liquidity=params.liquidity, reserve_risky=0.0, reserve_stable=0.0,
                  token0=pair.token0, token1=pair.token1)
        _check_candidate(price, "amm.portfolio")
        x = amm.risky_for_price(price)
        if not 0.0 < x < 1.0:
            raise InvalidConfig(f"initial price {price} is outside the Portfolio curve range")
        amm.reserve_risky = x * amm.liquidity
        amm.reserve_stable = amm.stable_for_risky(x) * amm.liquidity
        return amm

    # ----- curve -----
    @property
    def sigma_sqrt_tau(self) -> float:
        return self.sigma * math.sqrt(self.tau)

    @property
    def gamma(self) -> float:
        return 1.0 - self.fee

    def stable_for_risky(self, x: float, k: float = 0.0) -> float:
        """y on the curve for per-unit risky reserve x and invariant k."""
        v = self.sigma_sqrt_tau
        return self.strike * float(stats.norm.cdf(stats.norm.ppf(1.0 - x) - v)) + k

    def risky_for_price(self, price: float) -> float:
        v = self.sigma_sqrt_tau
        d = (math.log(price / self.strike) + 0.5 * v * v) / v
        return 1.0 - float(stats.norm.cdf(d))

    def price_for_risky(self, x: float) -> float:
        v = self.sigma_sqrt_tau
        return self.strike * math.exp(float(stats.norm.ppf(1.0 - x)) * v - 0.5 * v * v)

    def invariant_of(self, reserve_risky: float, reserve_stable: float) -> float:
        x = reserve_risky / self.liquidity
        return reserve_stable / self.liquidity - self.stable_for_risky(x)

    @property
    def invariant(self) -> float:
        return self.invariant_of(self.reserve_risky, self.reserve_stable)

    @property
    def price(self) -> float:
        return self.price_for_risky(self.reserve_risky / self.liquidity)

    @property
    def state(self) -> PortfolioState:
        return PortfolioState(
            reserve_risky=self.reserve_risky,
            reserve_stable=self.reserve_stable,
            liquidity=self.liquidity,
            invariant=self.invariant,
            price=self.price,
        )

    # ----- capability set -----
    def quote(self, candidate_price: float) -> ImpliedTrade:
        _check_candidate(candidate_price, "amm.portfolio")
        L = self.liquidity
        x = self.reserve_risky / L
        y = self.reserve_stable / L
        k = y - self.stable_for_risky(x)

        x_t = self.risky_for_price(candidate_price)
        if not 0.0 < x_t < 1.0:
            raise InsufficientLiquidity(
                f"price {candidate_price} drains the risky or stable reserve",
                component="amm.portfolio", operation="quote",
            )
        y_t = self.stable_for_risky(x_t, k)

        if x_t < x:
            # price up: stable in, risky out
            dy_eff = (y_t - y) * L
            dy_in = dy_eff / self.gamma
            dx_out = (x - x_t) * L
            return ImpliedTrade(self.token1, self.token0, dy_in, dx_out, candidate_price)
        if x_t > x:
            # price down: risky in, stable out; the retained fee sits in the risky reserve
            dx_eff = (x_t - x) * L
            dx_in = dx_eff / self.gamma
            dy_out = (y - y_t) * L
            x_after = (self.reserve_risky + dx_in) / L
            if x_after >= 1.0:
                raise InsufficientLiquidity(
                    f"price {candidate_price} drains the stable reserve",
                    component="amm.portfolio", operation="quote",
                )
            return ImpliedTrade(self.token0, self.token1, dx_in, dy_out, self.price_for_risky(x_after))
        return ImpliedTrade(self.token0, self.token1, 0.0, 0.0, self.price)

    def apply(self, trade: ImpliedTrade) -> PortfolioState:
        if trade.is_empty:
            return self.state
        if trade.asset_in == self.token0 and trade.asset_out == self.token1:
            new_risky = self.reserve_risky + trade.amount_in
            new_stable = self.reserve_stable - trade.amount_out
        elif trade.asset_in == self.token1 and trade.asset_out == self.token0:
            new_risky = self.reserve_risky - trade.amount_out
            new_stable = self.reserve_stable + trade.amount_in
        else:
            raise ValueError(f"trade assets {trade.asset_in}->{trade.asset_out} do not match this pool")

        if new_risky <= 0.0 or new_stable < -RESERVE_TOL * self.liquidity:
            raise InsufficientLiquidity(
                f"trade would drive a reserve negative (risky={new_risky:.6g}, stable={new_stable:.6g})",
                component="amm.portfolio",
            )
        if new_risky >= self.liquidity:
            raise InsufficientLiquidity(
                f"risky reserve {new_risky:.6g} reaches the liquidity bound {self.liquidity:.6g}",
                component="amm.portfolio",
            )
        new_stable = max(new_stable, 0.0)

        k_before = self.invariant
        k_after = self.invariant_of(new_risky, new_stable)
        if k_after < k_before - RESERVE_TOL * max(1.0, abs(k_before)):
            raise InsufficientLiquidity(
                f"trade decreases the curve invariant ({k_before:.6g} -> {k_after:.6g})",
                component="amm.portfolio",
            )

        self.reserve_risky = new_risky
        self.reserve_stable = new_stable
        return self.state


# =============================================================================
# Uniswap v3
# =============================================================================

@dataclass
class UniswapV3AMM:
    pool: V3Pool
    token0: str = "token0"
    token1: str = "token1"
    name: str = "UniswapV3"

    @classmethod
    def from_price(cls, price: float, params: UniswapConfig, pair: PairConfig) -> "UniswapV3AMM":
        """Pool at `price` with one position of `liquidity` over ±range_ticks."""
        _check_candidate(price, "amm.uniswap")
        pool = V3Pool.at_price(price, fee=params.fee, tick_spacing=params.tick_spacing)
        try:
            pool.add_liquidity_range(pool.tick - params.range_ticks, pool.tick + params.range_ticks,
                                     params.liquidity)
        except ValueError as exc:
            raise InvalidConfig(f"cannot seed Uniswap pool: {exc}") from exc
        return cls(pool=pool, token0=pair.token0, token1=pair.token1)

    @property
    def price(self) -> float:
        return self.pool.price

    @property
    def state(self) -> UniswapV3State:
        p = self.pool
        return UniswapV3State(
            sqrt_price=p.S, price=p.price, tick=p.tick, active_liquidity=p.L_active,
            reserve0=p.reserve0, reserve1=p.reserve1, fees0=p.fees0, fees1=p.fees1,
        )

    def quote(self, candidate_price: float) -> ImpliedTrade:
        _check_candidate(candidate_price, "amm.uniswap")
        trial = copy.deepcopy(self.pool)
        direction_up = candidate_price > trial.price
        res = trial.swap_to_price(candidate_price)
        if res.exhausted:
            raise InsufficientLiquidity(
                f"price {candidate_price:.6g} is beyond the initialized liquidity (tick {trial.tick})",
                component="amm.uniswap", operation="quote",
            )
        if res.amount_in <= 0.0:
            return ImpliedTrade(self.token0, self.token1, 0.0, 0.0, trial.price)
        if direction_up:
            return ImpliedTrade(self.token1, self.token0, res.amount_in, res.amount_out, trial.price)
        return ImpliedTrade(self.token0, self.token1, res.amount_in, res.amount_out, trial.price)

    def apply(self, trade: ImpliedTrade) -> UniswapV3State:
        if trade.is_empty:
            return self.state
        trial = copy.deepcopy(self.pool)
        if trade.asset_in == self.token0 and trade.asset_out == self.token1:
            res = trial.swap_x_to_y(trade.amount_in)
        elif trade.asset_in == self.token1 and trade.asset_out == self.token0:
            res = trial.swap_y_to_x(trade.amount_in)
        else:
            raise ValueError(f"trade assets {trade.asset_in}->{trade.asset_out} do not match this pool")

        if res.exhausted:
            raise InsufficientLiquidity(
                f"swap of {trade.amount_in:.6g} {trade.asset_in} crosses the last initialized tick",
                component="amm.uniswap",
            )
        scale = max(1.0, trial.reserve0, trial.reserve1)
        if trial.reserve0 < -RESERVE_TOL * scale or trial.reserve1 < -RESERVE_TOL * scale:
            raise InsufficientLiquidity(
                f"swap would drive a reserve negative (reserve0={trial.reserve0:.6g}, reserve1={trial.reserve1:.6g})",
                component="amm.uniswap",
            )
        trial.reserve0 = max(trial.reserve0, 0.0)
        trial.reserve1 = max(trial.reserve1, 0.0)
        self.pool = trial
        return self.state


def build_amm(config: AppConfig, variant: Optional[str] = None, price: Optional[float] = None) -> AMMModel:
    """Select and seed the AMM variant named by `variant` (or the config's)."""
    variant = variant or config.simulation.amm_variant
    price = config.simulation.initial_price if price is None else price
    if variant == "Portfolio":
        return PortfolioAMM.from_price(price, config.portfolio, config.pair)
    if variant == "UniswapV3":
        return UniswapV3AMM.from_price(price, config.uniswap, config.pair)
    raise InvalidConfig(f"unknown amm_variant '{variant}', expected one of {list(AMM_VARIANTS)}")
