"""
Utility functions, constants and small helpers shared across the package.
"""
from __future__ import annotations

import math
import os
import tempfile
from pathlib import Path
from typing import Callable, IO, Tuple

# =============================================================================
# Global tolerances & Uniswap v3 grid constants
# =============================================================================

EPS_LIQ = 1e-18        # active liquidity ~ zero for swaps
EPS_BOUNDARY = 1e-12
EPS_LIQ2 = 1e-7        # active liquidity ~ zero after (re)mint
EPS_STEPS = 1e-9       # guard for floor(horizon / time_step) on exact ratios

TICK_BASE = 1.0001
TICK_LN = math.log(TICK_BASE)
MIN_TICK = -887272
MAX_TICK = 887272
Q96 = 1 << 96


def clamp(x: float, lo: float, hi: float) -> float:
    """Clamp x into [lo, hi]."""
    return max(lo, min(hi, x))


def tick_from_price(price: float) -> int:
    """Largest tick i with 1.0001**i <= price."""
    return int(math.floor(math.log(price) / TICK_LN + EPS_BOUNDARY))


def minted_amounts_at_S(L: float, sa: float, sb: float, S: float) -> Tuple[float, float]:
    """
    Given liquidity L and range [sa, sb) in sqrt-price, return (token0, token1)
    held by that range at sqrt-price S.

      S <= sa:  (L(1/sa - 1/sb), 0)
      S >= sb:  (0, L(sb - sa))
      else:     (L(1/S - 1/sb), L(S - sa))
    """
    if S <= sa:
        return L * (1 / sa - 1 / sb), 0.0
    elif S >= sb:
        return 0.0, L * (sb - sa)
    else:
        return L * (1 / S - 1 / sb), L * (S - sa)


# =============================================================================
# Output paths & files
# =============================================================================

def next_numbered_path(base: Path, extension: str = ".txt") -> Path:
    """
    Return the first path of the form `{stem}_{n}{extension}` that does not exist yet.
    Ensures the parent directory exists before returning the candidate.
    """
    base = Path(base)
    directory = base.parent if base.parent != Path("") else Path(".")
    directory.mkdir(parents=True, exist_ok=True)
    if base.suffix:
        stem = base.stem
        ext = base.suffix
    else:
        stem = base.name
        ext = extension
    idx = 0
    while True:
        candidate = directory / f"{stem}_{idx}{ext}"
        if not candidate.exists():
            return candidate
        idx += 1


def atomic_write(path: Path, write: Callable[[IO[str]], None]) -> None:
    """
    Write a text file through a temp file in the same directory and swap it in
    with `os.replace`, so readers only ever see a complete file (or none).
    """
    path = Path(path)
    directory = path.parent if str(path.parent) else Path(".")
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(directory), text=True)
    try:
        with os.fdopen(fd, "w", newline="", encoding="utf-8") as handle:
            write(handle)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
