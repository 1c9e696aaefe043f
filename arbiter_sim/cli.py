"""
Command-line entry point.

    arbiter-sim [--config config.yml] [--quiet] <command> ...

    simulate {portfolio,uniswap}        run one simulation, write trades CSV + PNG
    plot {gbm,ou}                       generate a price path and save its PNG
    monitor-live [--address A]          stream live swaps until Ctrl-C
    export-range --start --end --address [--out]
    import-backtest --file PATH         load a dataset and print a model comparison

The configuration is loaded once per invocation; any error prints a single
`[error] component.operation: ...` line to stderr and exits with status 1.
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

from .backtest import compare_dataset
from .config import AppConfig, DEFAULT_CONFIG_PATH, load_config
from .engine import SimulationEngine
from .errors import ArbiterError, InvalidConfig
from .ingest import export_range, import_backtest
from .ledger import Web3Ledger, check_address
from .live import ConsoleSink, CsvFileSink, LiveMonitor, ReconnectPolicy, ReplaySink
from .plotting import plot_price_path, plot_simulation
from .processes import PricePath, generate_price_path
from .records import BlockRange, write_dataset
from .utils import next_numbered_path

VARIANT_BY_COMMAND = {"portfolio": "Portfolio", "uniswap": "UniswapV3"}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="arbiter-sim", description="DEX price-process simulation and swap backtesting.")
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH,
                        help=f"Path to the YAML configuration (default: {DEFAULT_CONFIG_PATH}).")
    common.add_argument("--quiet", action="store_true", help="Less verbose printing.")

    sub = p.add_subparsers(dest="command")

    sp = sub.add_parser("simulate", parents=[common], help="Simulate an AMM against a synthetic price path.")
    sp.add_argument("variant", choices=sorted(VARIANT_BY_COMMAND), help="AMM model to drive.")

    sp = sub.add_parser("plot", parents=[common], help="Plot a synthetic price path.")
    sp.add_argument("process", choices=["gbm", "ou"], help="Price process to generate.")

    sp = sub.add_parser("monitor-live", parents=[common], help="Stream swap events of a pool as they are mined.")
    sp.add_argument("--address", default=None, help="Pool address (default: ledger.address from the config).")
    sp.add_argument("--start-block", type=int, default=None, help="First block to follow (default: chain head).")

    sp = sub.add_parser("export-range", parents=[common], help="Export a block range of swaps to CSV.")
    sp.add_argument("--start", type=int, required=True, help="First block (inclusive).")
    sp.add_argument("--end", type=int, required=True, help="Last block (inclusive).")
    sp.add_argument("--address", default=None, help="Pool address (default: ledger.address from the config).")
    sp.add_argument("--out", type=Path, default=None, help="Output CSV (default: numbered file in results dir).")

    sp = sub.add_parser("import-backtest", parents=[common], help="Load a swap CSV and compare it with the model.")
    sp.add_argument("--file", type=Path, required=True, help="Record file written by export-range or simulate.")
    return p


def _pool_address(args: argparse.Namespace, cfg: AppConfig) -> str:
    """--address, else ledger.address; checked before any ledger is opened."""
    return check_address(args.address or cfg.ledger.address, component="cli", operation=args.command)


# =============================================================================
# Commands
# =============================================================================

def cmd_simulate(args: argparse.Namespace, cfg: AppConfig) -> int:
    variant = VARIANT_BY_COMMAND[args.variant]
    path = PricePath(cfg.simulation)
    if not args.quiet:
        print(f"[simulate] {cfg.simulation.process} x {variant}: {len(path)} steps (seed={cfg.simulation.seed})")

    result = SimulationEngine(cfg, amm_variant=variant).run(path, progress=not args.quiet)

    results_dir = Path(cfg.output.results_dir)
    csv_path = write_dataset(result.records, next_numbered_path(results_dir / f"simulate_{variant.lower()}.csv"))
    png_path = plot_simulation(result, list(path.prices()), results_dir)
    if not args.quiet:
        print(f"[simulate] {result.state.value}: {len(result.records)} trade(s) -> {csv_path}")
        print(f"[simulate] plot -> {png_path}")
    result.raise_for_failure()
    if not args.quiet and result.reserve_states:
        print(f"[RESULT] final state: {result.reserve_states[-1]}")
    return 0


def cmd_plot(args: argparse.Namespace, cfg: AppConfig) -> int:
    path = generate_price_path(cfg.simulation, process=args.process)
    png_path = plot_price_path(path, Path(cfg.output.results_dir))
    if not args.quiet:
        print(f"[plot] {path.config.process} path ({len(path)} steps) -> {png_path}")
    return 0


def cmd_export(args: argparse.Namespace, cfg: AppConfig) -> int:
    block_range = BlockRange(args.start, args.end)
    address = _pool_address(args, cfg)
    out_path = args.out or next_numbered_path(
        Path(cfg.output.results_dir) / f"swaps_{block_range.start_block}_{block_range.end_block}.csv")
    if not args.quiet:
        print(f"[export] {address} blocks [{block_range.start_block}, {block_range.end_block}]")

    dataset = asyncio.run(export_range(Web3Ledger(cfg.ledger), block_range, address, cfg, out_path=out_path))
    if not args.quiet:
        print(f"[export] {len(dataset)} swap(s) -> {out_path}")
    return 0


def cmd_import(args: argparse.Namespace, cfg: AppConfig) -> int:
    dataset = import_backtest(args.file)
    if not args.quiet:
        print(f"[import] {len(dataset)} record(s) from {args.file}")
    report = compare_dataset(dataset, cfg)
    for line in report.lines():
        print(f"[RESULT] {line}")
    return 0


def _make_sink(cfg: AppConfig, quiet: bool):
    kind = cfg.monitor.sink
    if kind == "file":
        return CsvFileSink(Path(cfg.monitor.output))
    if kind == "replay":
        return ReplaySink(cfg, inner=None if quiet else ConsoleSink())
    return ConsoleSink()


async def _monitor(monitor: LiveMonitor) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_event.set)
    except (NotImplementedError, RuntimeError):
        pass  # no loop signal handlers here; Ctrl-C surfaces as KeyboardInterrupt
    try:
        return await monitor.run(stop_event)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def cmd_monitor(args: argparse.Namespace, cfg: AppConfig) -> int:
    address = _pool_address(args, cfg)
    sink = _make_sink(cfg, args.quiet)
    monitor = LiveMonitor(Web3Ledger(cfg.ledger), address, sink, cfg,
                          policy=ReconnectPolicy.from_config(cfg.monitor),
                          start_block=args.start_block, verbose=not args.quiet)
    if not args.quiet:
        print(f"[live] following {address} (sink={cfg.monitor.sink}); Ctrl-C to stop")
    try:
        asyncio.run(_monitor(monitor))
    except KeyboardInterrupt:
        pass
    if isinstance(sink, ReplaySink) and not args.quiet:
        print(f"[RESULT] replayed {len(sink.gaps)} record(s); max |model - observed| = {sink.max_abs_gap:.6g}")
        if sink.error is not None:
            print(f"[RESULT] replay stopped at block {sink.failed_at}: {sink.error}")
    return 0


COMMANDS = {
    "simulate": cmd_simulate,
    "plot": cmd_plot,
    "monitor-live": cmd_monitor,
    "export-range": cmd_export,
    "import-backtest": cmd_import,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    try:
        cfg = load_config(args.config)
        if not args.quiet:
            print(f"[config] loaded {cfg.source}")
        return COMMANDS[args.command](args, cfg)
    except ArbiterError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
