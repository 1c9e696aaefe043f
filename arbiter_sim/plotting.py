"""
Plot sink: PNG figures of generated price paths and simulation runs.
Files are never overwritten; each save picks the next free `{stem}_{n}.png`.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402

from .engine import SimulationResult  # noqa: E402
from .processes import PricePath  # noqa: E402
from .utils import next_numbered_path  # noqa: E402

# ---- Plot styling ----
TITLE_FONT_SIZE = 16
LABEL_FONT_SIZE = 14
LEGEND_FONT_SIZE = 12

plt.rcParams.update({
    "axes.titlesize": TITLE_FONT_SIZE,
    "axes.labelsize": LABEL_FONT_SIZE,
    "legend.fontsize": LEGEND_FONT_SIZE,
})
plt.rcParams["axes.grid"] = True


def _save(fig, results_dir: Path, stem: str) -> Path:
    png_path = next_numbered_path(Path(results_dir) / f"{stem}.png")
    fig.tight_layout()
    fig.savefig(png_path, dpi=150)
    plt.close(fig)
    return png_path


def plot_price_path(path: PricePath, results_dir: Path, title: Optional[str] = None) -> Path:
    """Save the path (S0 at step 0 followed by every generated point)."""
    cfg = path.config
    steps = [0] + [p.step for p in path]
    prices = [cfg.initial_price] + list(path.prices())

    fig, ax = plt.subplots(figsize=(12, 4.5))
    ax.plot(steps, prices, lw=1.2, label=cfg.process)
    if cfg.process == "OU":
        ax.axhline(cfg.mean_level, ls="--", lw=1.0, color="gray", label="long-run mean")
    ax.set_xlabel("Step", fontsize=LABEL_FONT_SIZE)
    ax.set_ylabel("Price", fontsize=LABEL_FONT_SIZE)
    ax.set_title(title or f"{cfg.process} path (seed={cfg.seed}, dt={cfg.time_step:g}, T={cfg.horizon:g})",
                 fontsize=TITLE_FONT_SIZE)
    ax.legend(fontsize=LEGEND_FONT_SIZE)
    return _save(fig, results_dir, f"{cfg.process.lower()}_path")


def plot_simulation(
    result: SimulationResult,
    target_prices: Sequence[float],
    results_dir: Path,
) -> Path:
    """Target (process) price vs the AMM's resulting price, with traded input size below."""
    steps = [r.block_or_step for r in result.records]
    fig, (ax, ax_vol) = plt.subplots(2, 1, figsize=(15, 6.5), sharex=True,
                                     gridspec_kw={"height_ratios": [3, 1]})
    ax.plot(range(1, len(target_prices) + 1), target_prices, lw=1.0, label="Target price")
    ax.plot(steps, result.prices, lw=1.0, ls="--", label=f"{result.amm_variant} price")
    if result.failed_step is not None:
        ax.axvline(result.failed_step, color="red", lw=1.0, label=f"failed at step {result.failed_step}")
    ax.set_ylabel("Price (token1 per token0)", fontsize=LABEL_FONT_SIZE)
    ax.set_title(f"Target vs {result.amm_variant} price", fontsize=TITLE_FONT_SIZE)
    ax.legend(ncol=2, fontsize=LEGEND_FONT_SIZE)

    ax_vol.bar(steps, [r.amount_in for r in result.records], width=1.0)
    ax_vol.set_xlabel("Step", fontsize=LABEL_FONT_SIZE)
    ax_vol.set_ylabel("Amount in", fontsize=LABEL_FONT_SIZE - 1)
    return _save(fig, results_dir, f"simulate_{result.amm_variant.lower()}")
