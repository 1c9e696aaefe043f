"""
Event ingestion: export a block range of on-chain swaps to a dataset, and
import a persisted dataset for backtesting.
"""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple, Union

from .config import AppConfig
from .errors import MalformedRecord
from .ledger import Ledger, check_address, normalize_swap_event
from .records import BacktestDataset, BlockRange, TradeRecord, read_dataset, write_dataset


def as_block_range(block_range: Union[BlockRange, Tuple[int, int]]) -> BlockRange:
    if isinstance(block_range, BlockRange):
        return block_range
    start, end = block_range
    return BlockRange(int(start), int(end))


async def export_range(
    ledger: Ledger,
    block_range: Union[BlockRange, Tuple[int, int]],
    address: str,
    config: AppConfig,
    out_path: Optional[Path] = None,
    close_ledger: bool = True,
) -> BacktestDataset:
    """
    Fetch every Swap event of `address` in `block_range` and return them as an
    ordered, immutable dataset (optionally persisted to `out_path`).

    The range and address are checked before the ledger is queried. Ledger
    failures propagate unchanged and no partial dataset is produced. With
    `close_ledger` the ledger is closed on every exit path.
    """
    try:
        block_range = as_block_range(block_range)
        address = check_address(address, component="ingest", operation="export")

        raw_events = await ledger.get_events(address, block_range)

        records: List[TradeRecord] = []
        prev_key: Optional[Tuple[int, int]] = None
        for raw in raw_events:
            record = normalize_swap_event(raw, config.pair, config.ledger)
            if record.block_or_step not in block_range:
                raise MalformedRecord(
                    f"event at block {record.block_or_step} outside requested range "
                    f"[{block_range.start_block}, {block_range.end_block}]",
                    component="ingest", operation="export",
                )
            if prev_key is not None and record.sort_key <= prev_key:
                raise MalformedRecord(
                    f"event {record.sort_key} delivered out of order after {prev_key}",
                    component="ingest", operation="export",
                )
            prev_key = record.sort_key
            records.append(record)

        dataset = BacktestDataset(tuple(records), source=f"{address}@{block_range.start_block}-{block_range.end_block}")
        if out_path is not None:
            write_dataset(dataset, Path(out_path))
        return dataset
    finally:
        if close_ledger:
            await ledger.close()


def import_backtest(path: Path) -> BacktestDataset:
    """Load a persisted dataset; any malformed line rejects the whole file."""
    return read_dataset(Path(path))
