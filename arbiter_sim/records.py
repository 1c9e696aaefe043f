"""
Record types shared by the simulation and ingestion paths, plus the CSV codec.

Persisted format (one record per line, header first):

    block_or_step,log_index,amount_in,amount_out,asset_in,asset_out,resulting_price

Floats are written at full (round-trip) precision, so a dataset written with
`write_dataset` reads back field-for-field identical with `read_dataset`.
"""
from __future__ import annotations

import math
import re
from dataclasses import astuple, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import pandas as pd

from .errors import InvalidConfig, MalformedRecord
from .utils import atomic_write


@dataclass(frozen=True)
class PricePoint:
    step: int
    price: float


@dataclass(frozen=True)
class TradeRecord:
    """
    One executed (simulated) or observed (on-chain) trade.

    `block_or_step` is the simulation step or the block number; `log_index`
    orders trades inside one block (0 for simulated steps).
    """
    block_or_step: int
    amount_in: float
    amount_out: float
    asset_in: str
    asset_out: str
    resulting_price: float
    log_index: int = 0

    @property
    def sort_key(self) -> Tuple[int, int]:
        return self.block_or_step, self.log_index


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block span; start_block <= end_block."""
    start_block: int
    end_block: int

    def __post_init__(self) -> None:
        if self.start_block < 0 or self.end_block < 0:
            raise InvalidConfig(
                f"block numbers must be >= 0, got [{self.start_block}, {self.end_block}]",
                component="ingest", operation="export",
            )
        if self.start_block > self.end_block:
            raise InvalidConfig(
                f"start_block ({self.start_block}) > end_block ({self.end_block})",
                component="ingest", operation="export",
            )

    def __contains__(self, block: int) -> bool:
        return self.start_block <= block <= self.end_block

    def __len__(self) -> int:
        return self.end_block - self.start_block + 1


@dataclass(frozen=True)
class BacktestDataset:
    """Ordered, immutable sequence of trade records."""
    records: Tuple[TradeRecord, ...]
    source: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "records", tuple(self.records))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[TradeRecord]:
        return iter(self.records)

    def __getitem__(self, idx: int) -> TradeRecord:
        return self.records[idx]

    @property
    def block_span(self) -> Optional[Tuple[int, int]]:
        if not self.records:
            return None
        return self.records[0].block_or_step, self.records[-1].block_or_step

    def to_frame(self) -> pd.DataFrame:
        return records_frame(self.records)


# =============================================================================
# CSV codec
# =============================================================================

FIELDS: Tuple[str, ...] = (
    "block_or_step", "log_index", "amount_in", "amount_out",
    "asset_in", "asset_out", "resulting_price",
)
INT_FIELDS = ("block_or_step", "log_index")
FLOAT_FIELDS = ("amount_in", "amount_out", "resulting_price")


def records_frame(records: Iterable[TradeRecord]) -> pd.DataFrame:
    rows = [dict(zip([f.name for f in fields(TradeRecord)], astuple(r))) for r in records]
    df = pd.DataFrame(rows, columns=list(FIELDS))
    return df.astype({name: "int64" for name in INT_FIELDS} | {name: "float64" for name in FLOAT_FIELDS})


def record_row(record: TradeRecord) -> str:
    """Single CSV line (no newline) in `FIELDS` order, floats in repr form."""
    values = []
    for name in FIELDS:
        value = getattr(record, name)
        values.append(repr(float(value)) if name in FLOAT_FIELDS else str(value))
    return ",".join(values)


def write_dataset(records: Iterable[TradeRecord], path: Path) -> Path:
    """Persist records atomically; the file is either complete or absent."""
    path = Path(path)
    df = records_frame(records)
    atomic_write(path, lambda handle: df.to_csv(handle, index=False, lineterminator="\n"))
    return path


_LINE_RE = re.compile(r"line (\d+)")


def _parse_row(row: Dict[str, Any], line: int) -> TradeRecord:
    values: Dict[str, Any] = {}
    for name in FIELDS:
        raw = row.get(name)
        if raw is None or (isinstance(raw, float) and math.isnan(raw)) or str(raw).strip() == "":
            raise MalformedRecord(f"missing required field '{name}'", line=line)
        text = str(raw).strip()
        try:
            if name in INT_FIELDS:
                values[name] = int(text)
            elif name in FLOAT_FIELDS:
                values[name] = float(text)
            else:
                values[name] = text
        except ValueError:
            raise MalformedRecord(f"field '{name}' has invalid value {text!r}", line=line) from None

    if values["block_or_step"] < 0 or values["log_index"] < 0:
        raise MalformedRecord("block_or_step and log_index must be >= 0", line=line)
    for name in FLOAT_FIELDS:
        if not math.isfinite(values[name]):
            raise MalformedRecord(f"field '{name}' must be finite", line=line)
    if values["amount_in"] < 0 or values["amount_out"] < 0:
        raise MalformedRecord("amounts must be >= 0", line=line)
    return TradeRecord(**values)


def read_dataset(path: Path) -> BacktestDataset:
    """
    Load a record file completely or not at all.

    Any malformed line raises `MalformedRecord` with its 1-based line number
    (the header is line 1); no records are returned in that case.
    """
    path = Path(path)
    if not path.exists():
        raise MalformedRecord(f"record file not found: {path}")

    try:
        df = pd.read_csv(
            path,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=False,
        )
    except pd.errors.EmptyDataError:
        raise MalformedRecord("empty record file, expected a header row", line=1) from None
    except pd.errors.ParserError as exc:
        match = _LINE_RE.search(str(exc))
        line = int(match.group(1)) if match else None
        raise MalformedRecord(f"wrong number of fields ({exc})", line=line) from None

    header = [str(c).strip() for c in df.columns]
    if header != list(FIELDS):
        raise MalformedRecord(f"header must be {','.join(FIELDS)}, got {','.join(header)}", line=1)

    records: List[TradeRecord] = []
    for idx, row in enumerate(df.to_dict(orient="records")):
        records.append(_parse_row(row, line=idx + 2))
    return BacktestDataset(tuple(records), source=str(path))
