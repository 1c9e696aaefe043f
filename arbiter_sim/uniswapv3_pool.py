"""
Uniswap v3 pool implementation with spacing-aware tick management.
"""
from __future__ import annotations

import math
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .utils import (
    EPS_BOUNDARY,
    EPS_LIQ,
    EPS_LIQ2,
    MAX_TICK,
    MIN_TICK,
    TICK_BASE,
    minted_amounts_at_S,
    tick_from_price,
)


@dataclass
class SwapResult:
    """Outcome of one swap leg. `amount_in` is pre-fee (what the trader pays)."""
    amount_in: float = 0.0
    amount_out: float = 0.0
    fee: float = 0.0
    exhausted: bool = False


# =============================================================================
# Pool (Uniswap v3-style, spacing-aware)
# =============================================================================

@dataclass
class V3Pool:
    """
    Minimal Uniswap v3 pool state for a single asset pair, **spacing-aware**.

    Grid & price:
      • S := sqrt(P) where P is token1 per token0. Grid ratio g = sqrt(1.0001).
      • Tick i has lower boundary s_i = base_s · g^i (base_s = 1 gives the on-chain
        grid) and the active **band** is [tick, tick+tick_spacing).
      • Active liquidity L_active is the prefix-sum of `liquidity_net` up to `tick`.

    Liquidity book:
      • `liquidity_net[k]` stores the ΔL applied when crossing **upward** through boundary k.

    Fees & swaps:
      • Fee f is **on input**; r = 1 - f is the retained fraction used to move S.
        Fees are accrued to `fees0`/`fees1` and never re-enter the curve.
      • Swaps consume liquidity only where it exists. Empty bands between two
        initialized ranges are bridged without trading; running past the last
        initialized boundary (or the MIN/MAX tick) leaves the swap `exhausted`.

    Reserves:
      • `reserve0`/`reserve1` are the token balances backing all positions; they
        always equal `curve_amounts()` up to float error.
    """
    g: float
    base_s: float
    tick: int
    S: float
    f: float
    liquidity_net: Dict[int, float] = field(default_factory=dict)
    L_active: float = 0.0
    tick_spacing: int = 60
    reserve0: float = 0.0
    reserve1: float = 0.0
    fees0: float = 0.0
    fees1: float = 0.0

    @classmethod
    def at_price(cls, price: float, fee: float, tick_spacing: int) -> "V3Pool":
        """Empty pool on the on-chain grid, positioned at `price`."""
        tick = tick_from_price(price)
        return cls(g=math.sqrt(TICK_BASE), base_s=1.0, tick=tick, S=math.sqrt(price),
                   f=fee, tick_spacing=tick_spacing)

    # ----- derived properties -----
    @property
    def r(self) -> float:
        return 1.0 - self.f

    @property
    def price(self) -> float:
        return self.S * self.S

    # ----- spacing helpers -----
    def _snap(self, i: int) -> int:
        s = self.tick_spacing
        return (i // s) * s

    def s_at(self, i: int) -> float:
        return self.base_s * (self.g ** i)

    def s_lower(self, i: Optional[int] = None) -> float:
        if i is None:
            i = self.tick
        return self.s_at(i)

    def s_upper(self, i: Optional[int] = None) -> float:
        return self.s_lower(i) * (self.g ** self.tick_spacing)

    # ----- core state maintenance -----
    def __post_init__(self) -> None:
        self.tick = self._snap(self.tick)
        self.recompute_active_L()

    def recompute_active_L(self) -> None:
        L = math.fsum(dL for t, dL in self.liquidity_net.items() if t <= self.tick)
        if abs(L) < EPS_LIQ2:
            L = 0.0
        self.L_active = L

    def add_liquidity_range(self, lower_tick: int, upper_tick: int, L: float) -> None:
        """Mint L over [lower_tick, upper_tick) and deposit the tokens it needs."""
        lower_tick = self._snap(lower_tick)
        upper_tick = self._snap(upper_tick)
        if lower_tick >= upper_tick:
            raise ValueError("Range must be non-empty after snap")
        if lower_tick < MIN_TICK or upper_tick > MAX_TICK:
            raise ValueError(f"Range [{lower_tick}, {upper_tick}) outside tick bounds")

        self.liquidity_net[lower_tick] = self.liquidity_net.get(lower_tick, 0.0) + L
        self.liquidity_net[upper_tick] = self.liquidity_net.get(upper_tick, 0.0) - L

        amt0, amt1 = minted_amounts_at_S(L, self.s_at(lower_tick), self.s_at(upper_tick), self.S)
        self.reserve0 += amt0
        self.reserve1 += amt1
        self.recompute_active_L()

    def curve_amounts(self) -> tuple[float, float]:
        """Token amounts implied by the liquidity book at the current S."""
        keys = sorted(self.liquidity_net)
        x = y = 0.0
        L = 0.0
        for lo, hi in zip(keys, keys[1:]):
            L += self.liquidity_net[lo]
            if L > EPS_LIQ2:
                a0, a1 = minted_amounts_at_S(L, self.s_at(lo), self.s_at(hi), self.S)
                x += a0
                y += a1
        return x, y

    def initialized_ticks(self) -> List[int]:
        return sorted(k for k, v in self.liquidity_net.items() if abs(v) > EPS_LIQ)

    def _cross_up_once(self) -> bool:
        if self.tick + self.tick_spacing > MAX_TICK:
            return False
        self.tick += self.tick_spacing
        self.recompute_active_L()
        return True

    def _cross_down_once(self) -> bool:
        if self.tick - self.tick_spacing < MIN_TICK:
            return False
        self.tick -= self.tick_spacing
        self.recompute_active_L()
        return True

    # ----- desert bridging (L_active == 0) -----
    def _bridge_up(self, bidx: "BoundaryIndex", target_S: float = math.inf) -> bool:
        k = bidx.next_up(self.tick)
        if k is None:
            return False
        s_k = self.s_at(k)
        if target_S < s_k:
            self.S = target_S
            return True
        self.S = s_k
        self.tick = k
        self.recompute_active_L()
        return True

    def _bridge_down(self, bidx: "BoundaryIndex", target_S: float = 0.0) -> bool:
        k = bidx.at_or_below(self.tick)
        if k is None or k - self.tick_spacing < MIN_TICK:
            return False
        s_k = self.s_at(k)
        if target_S > s_k:
            self.S = target_S
            return True
        self.S = s_k
        self.tick = k - self.tick_spacing
        self.recompute_active_L()
        return True

    def _settle(self, token_in: str, used_eff: float, out: float) -> SwapResult:
        pre = used_eff / self.r if self.r > 0 else used_eff
        fee = pre - used_eff
        if token_in == "x":
            self.reserve0 += used_eff
            self.reserve1 -= out
            self.fees0 += fee
        else:
            self.reserve1 += used_eff
            self.reserve0 -= out
            self.fees1 += fee
        return SwapResult(amount_in=pre, amount_out=out, fee=fee)

    # ----- exact-input swaps -----
    def swap_x_to_y(self, dx_in: float) -> SwapResult:
        if dx_in <= 0:
            return SwapResult()
        bidx = BoundaryIndex(self.liquidity_net)
        tol = max(EPS_LIQ, dx_in * EPS_BOUNDARY)

        dx_eff = dx_in * self.r
        dx_used = 0.0
        dy_out = 0.0
        exhausted = False

        while dx_eff > tol:
            if self.L_active <= EPS_LIQ:
                if not self._bridge_down(bidx):
                    exhausted = True
                    break
                continue
            S_lo = self.s_lower()
            if self.S <= S_lo + EPS_BOUNDARY:
                self.S = S_lo
                if not self._cross_down_once():
                    exhausted = True
                    break
                continue

            dx_to = self.L_active * (1 / S_lo - 1 / self.S)
            if dx_eff < dx_to - EPS_BOUNDARY:
                S_new = 1 / (1 / self.S + dx_eff / self.L_active)
                dy_out += self.L_active * (self.S - S_new)
                self.S = S_new
                dx_used += dx_eff
                dx_eff = 0.0
            else:
                dy_out += self.L_active * (self.S - S_lo)
                self.S = S_lo
                dx_eff -= dx_to
                dx_used += dx_to
                if not self._cross_down_once():
                    exhausted = dx_eff > tol
                    break

        result = self._settle("x", dx_used, dy_out)
        result.exhausted = exhausted
        return result

    def swap_y_to_x(self, dy_in: float) -> SwapResult:
        if dy_in <= 0:
            return SwapResult()
        bidx = BoundaryIndex(self.liquidity_net)
        tol = max(EPS_LIQ, dy_in * EPS_BOUNDARY)

        dy_eff = dy_in * self.r
        dy_used = 0.0
        dx_out = 0.0
        exhausted = False

        while dy_eff > tol:
            if self.L_active <= EPS_LIQ:
                if not self._bridge_up(bidx):
                    exhausted = True
                    break
                continue
            S_hi = self.s_upper()
            if self.S >= S_hi - EPS_BOUNDARY:
                self.S = S_hi
                if not self._cross_up_once():
                    exhausted = True
                    break
                continue

            dy_to = self.L_active * (S_hi - self.S)
            if dy_eff < dy_to - EPS_BOUNDARY:
                S_new = self.S + dy_eff / self.L_active
                dx_out += self.L_active * (1 / self.S - 1 / S_new)
                self.S = S_new
                dy_used += dy_eff
                dy_eff = 0.0
            else:
                dx_out += self.L_active * (1 / self.S - 1 / S_hi)
                self.S = S_hi
                dy_eff -= dy_to
                dy_used += dy_to
                if not self._cross_up_once():
                    exhausted = dy_eff > tol
                    break

        result = self._settle("y", dy_used, dx_out)
        result.exhausted = exhausted
        return result

    # ----- swap to a target price (arbitrage leg) -----
    def swap_to_price(self, target_price: float) -> SwapResult:
        """
        Trade along the curve until P == target_price. Direction follows the
        target: above the current price token1 is sold in, below token0 is.
        """
        target_S = math.sqrt(target_price)
        bidx = BoundaryIndex(self.liquidity_net)
        used_eff = 0.0
        out = 0.0
        exhausted = False

        if target_S > self.S + EPS_BOUNDARY:
            while self.S < target_S - EPS_BOUNDARY:
                if self.L_active <= EPS_LIQ:
                    if not self._bridge_up(bidx, target_S):
                        exhausted = True
                        break
                    continue
                S1 = min(self.s_upper(), target_S)
                if S1 > self.S:
                    used_eff += self.L_active * (S1 - self.S)
                    out += self.L_active * (1 / self.S - 1 / S1)
                    self.S = S1
                if self.S >= target_S - EPS_BOUNDARY:
                    break
                if not self._cross_up_once():
                    exhausted = True
                    break
            result = self._settle("y", used_eff, out)
        elif target_S < self.S - EPS_BOUNDARY:
            while self.S > target_S + EPS_BOUNDARY:
                if self.L_active <= EPS_LIQ:
                    if not self._bridge_down(bidx, target_S):
                        exhausted = True
                        break
                    continue
                S1 = max(self.s_lower(), target_S)
                if S1 < self.S:
                    used_eff += self.L_active * (1 / S1 - 1 / self.S)
                    out += self.L_active * (self.S - S1)
                    self.S = S1
                if self.S <= target_S + EPS_BOUNDARY:
                    break
                if not self._cross_down_once():
                    exhausted = True
                    break
            result = self._settle("x", used_eff, out)
        else:
            result = SwapResult()

        result.exhausted = exhausted
        return result


# =============================================================================
# Sparse boundary index (for fast next boundary lookups)
# =============================================================================

class BoundaryIndex:
    """
    Sparse index over boundaries with non-zero `liquidity_net` entries.

    O(log B) lookup for the next initialized boundary upward/downward from a
    tick, used to bridge empty bands without walking them one by one.
    """
    def __init__(self, liquidity_net: Dict[int, float]):
        self.keys = sorted([k for k, v in liquidity_net.items() if abs(v) > EPS_LIQ])

    def next_up(self, tick: int) -> Optional[int]:
        i = bisect_right(self.keys, tick)
        return self.keys[i] if i < len(self.keys) else None

    def prev_down(self, tick: int) -> Optional[int]:
        i = bisect_left(self.keys, tick) - 1
        return self.keys[i] if i >= 0 else None

    def at_or_below(self, tick: int) -> Optional[int]:
        return self.prev_down(tick + 1)
