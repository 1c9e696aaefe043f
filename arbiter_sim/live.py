"""
Live monitor: follow a pool's Swap events as they are mined and forward each
normalized TradeRecord to a sink.

    ledger.subscribe_events -> normalize -> de-duplicate -> sink.write

A dropped connection is retried with exponential backoff, resuming from the
last block a record was confirmed in (or the chain head pinned before the
first subscription); events seen again after a resume are skipped by
(block, log index). Stopping is cooperative: the stop event is
checked between deliveries, and a sink write is never interrupted.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import IO, List, Optional, Protocol, Tuple

from .amm import AMMModel, build_amm
from .config import AppConfig, MonitorConfig
from .errors import ConnectivityFailure, InsufficientLiquidity
from .ledger import Ledger, normalize_swap_event
from .records import FIELDS, TradeRecord, record_row
from .utils import clamp


# =============================================================================
# Reconnect policy
# =============================================================================

@dataclass(frozen=True)
class ReconnectPolicy:
    max_retries: int = 5
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0

    @classmethod
    def from_config(cls, monitor: MonitorConfig) -> "ReconnectPolicy":
        return cls(monitor.max_retries, monitor.backoff_base, monitor.backoff_factor, monitor.backoff_max)

    def delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect number `attempt` (1-based)."""
        return clamp(self.backoff_base * self.backoff_factor ** (attempt - 1), 0.0, self.backoff_max)


# =============================================================================
# Sinks
# =============================================================================

class Sink(Protocol):
    def write(self, record: TradeRecord) -> None: ...

    def close(self) -> None: ...


class ConsoleSink:
    def __init__(self, stream: Optional[IO[str]] = None):
        self.stream = stream

    def write(self, record: TradeRecord) -> None:
        print(f"[live] block {record.block_or_step} log {record.log_index}: "
              f"{record.amount_in:.6g} {record.asset_in} -> {record.amount_out:.6g} {record.asset_out} "
              f"@ {record.resulting_price:.6g}", file=self.stream, flush=True)

    def close(self) -> None:
        pass


class CsvFileSink:
    """Append records to a CSV file, one complete line per record."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists() or self.path.stat().st_size == 0
        self._handle = self.path.open("a", newline="", encoding="utf-8")
        if new_file:
            self._handle.write(",".join(FIELDS) + "\n")
            self._handle.flush()

    def write(self, record: TradeRecord) -> None:
        self._handle.write(record_row(record) + "\n")
        self._handle.flush()

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()


class ReplaySink:
    """
    Live backtest comparison: every observed price is replayed through an AMM
    model (seeded at the first observed price) and the gap between the
    model's resulting price and the observed one is tracked.

    Once the model cannot reach an observed price, replay stops (`failed_at`
    and `error` say where and why); records are still forwarded to `inner`.
    """

    def __init__(self, config: AppConfig, amm_variant: Optional[str] = None, inner: Optional[Sink] = None):
        self.config = config
        self.amm_variant = amm_variant or config.simulation.amm_variant
        self.inner = inner
        self.amm: Optional[AMMModel] = None
        self.gaps: List[float] = []
        self.model_records: List[TradeRecord] = []
        self.failed_at: Optional[int] = None
        self.error: Optional[InsufficientLiquidity] = None

    def write(self, record: TradeRecord) -> None:
        if self.error is None:
            try:
                self._replay(record)
            except InsufficientLiquidity as exc:
                self.failed_at = record.block_or_step
                self.error = exc
        if self.inner is not None:
            self.inner.write(record)

    def _replay(self, record: TradeRecord) -> None:
        if self.amm is None:
            self.amm = build_amm(self.config, self.amm_variant, price=record.resulting_price)
        trade = self.amm.quote(record.resulting_price)
        state = self.amm.apply(trade)
        self.model_records.append(TradeRecord(
            block_or_step=record.block_or_step,
            amount_in=trade.amount_in,
            amount_out=trade.amount_out,
            asset_in=trade.asset_in,
            asset_out=trade.asset_out,
            resulting_price=state.price,
            log_index=record.log_index,
        ))
        self.gaps.append(state.price - record.resulting_price)

    @property
    def max_abs_gap(self) -> float:
        return max((abs(g) for g in self.gaps), default=0.0)

    def close(self) -> None:
        if self.inner is not None:
            self.inner.close()


# =============================================================================
# Monitor
# =============================================================================

async def _pull(stream) -> Tuple[bool, object]:
    try:
        return True, await stream.__anext__()
    except StopAsyncIteration:
        return False, None


class LiveMonitor:
    def __init__(
        self,
        ledger: Ledger,
        address: str,
        sink: Sink,
        config: AppConfig,
        policy: Optional[ReconnectPolicy] = None,
        start_block: Optional[int] = None,
        verbose: bool = True,
    ):
        self.ledger = ledger
        self.address = address
        self.sink = sink
        self.config = config
        self.policy = policy or ReconnectPolicy.from_config(config.monitor)
        self.start_block = start_block
        self.verbose = verbose
        self.delivered = 0
        self.last_key: Optional[Tuple[int, int]] = None

    def _log(self, msg: str) -> None:
        if self.verbose:
            print(f"[live] {msg}", flush=True)

    @property
    def resume_block(self) -> Optional[int]:
        """Block to (re)subscribe from: the last confirmed block, else the start block."""
        return self.last_key[0] if self.last_key is not None else self.start_block

    async def _next_event(self, stream, stop_event: asyncio.Event):
        """Next raw event, or None when the stream ends or a stop is requested."""
        pull = asyncio.ensure_future(_pull(stream))
        stop = asyncio.ensure_future(stop_event.wait())
        try:
            done, _ = await asyncio.wait({pull, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in (pull, stop) if not task.done()]
            for task in pending:
                task.cancel()
            # the stream must be idle before it can be closed
            await asyncio.gather(*pending, return_exceptions=True)
        if pull in done:
            more, raw = pull.result()
            return raw if more else None
        return None

    async def _consume(self, stop_event: asyncio.Event) -> bool:
        """Deliver events until the stream ends (True) or a stop is requested (False)."""
        stream = self.ledger.subscribe_events(self.address, from_block=self.resume_block)
        try:
            while not stop_event.is_set():
                raw = await self._next_event(stream, stop_event)
                if raw is None:
                    return not stop_event.is_set()
                record = normalize_swap_event(raw, self.config.pair, self.config.ledger)
                if self.last_key is not None and record.sort_key <= self.last_key:
                    continue
                self.sink.write(record)
                self.last_key = record.sort_key
                self.delivered += 1
            return False
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> int:
        """
        Run until `stop_event` is set or the subscription ends; return the
        number of records delivered. Raises ConnectivityFailure once
        `max_retries` reconnects in a row have failed.
        """
        stop_event = stop_event or asyncio.Event()
        failures = 0
        try:
            while not stop_event.is_set():
                before = self.delivered
                try:
                    if self.resume_block is None:
                        # pin the head so a drop before the first record resumes from here
                        self.start_block = await self.ledger.block_number()
                    finished = await self._consume(stop_event)
                    if finished:
                        break
                except ConnectivityFailure as exc:
                    if self.delivered > before:
                        failures = 0
                    failures += 1
                    if failures > self.policy.max_retries:
                        raise ConnectivityFailure(
                            f"subscription lost after {failures} consecutive attempts: {exc.message}",
                            component="live", operation="subscribe", attempts=failures,
                        ) from exc
                    delay = self.policy.delay(failures)
                    self._log(f"connection lost ({exc.message}); retry {failures}/{self.policy.max_retries} "
                              f"in {delay:.1f}s from block {self.resume_block}")
                    try:
                        await asyncio.wait_for(stop_event.wait(), timeout=delay)
                    except asyncio.TimeoutError:
                        pass
        finally:
            try:
                self.sink.close()
            finally:
                await self.ledger.close()
        self._log(f"stopped after {self.delivered} record(s)")
        return self.delivered
