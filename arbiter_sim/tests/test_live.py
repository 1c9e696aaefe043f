import asyncio

import pytest

from arbiter_sim.errors import ConnectivityFailure, InsufficientLiquidity
from arbiter_sim.live import CsvFileSink, LiveMonitor, ReconnectPolicy, ReplaySink
from arbiter_sim.records import TradeRecord, read_dataset

from conftest import HANG, FakeLedger, swap_event

POOL = "0x88e6a0c2ddd26feeb64f039a2c41296fcb3f5640"
E18 = 10 ** 18


class ListSink:
    def __init__(self, on_write=None):
        self.records = []
        self.closed = False
        self.on_write = on_write

    def write(self, record):
        self.records.append(record)
        if self.on_write is not None:
            self.on_write(record)

    def close(self):
        self.closed = True


def ev(block, log_index, price=1.5):
    return swap_event(block, log_index, E18, -E18, price)


def test_backoff_is_exponential_and_capped():
    policy = ReconnectPolicy(max_retries=5, backoff_base=1.0, backoff_factor=2.0, backoff_max=30.0)
    assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert policy.delay(10) == 30.0


def test_reconnect_resumes_from_last_block_without_duplicates(fast_monitor_config):
    ledger = FakeLedger(sessions=[
        [ev(10, 0), ev(11, 0), ConnectivityFailure("socket closed")],
        [ev(10, 0), ev(11, 0), ev(11, 1), ev(12, 0)],
    ])
    sink = ListSink()
    monitor = LiveMonitor(ledger, POOL, sink, fast_monitor_config, start_block=10, verbose=False)

    delivered = asyncio.run(monitor.run())

    assert delivered == 4
    assert [r.sort_key for r in sink.records] == [(10, 0), (11, 0), (11, 1), (12, 0)]
    assert ledger.from_blocks == [10, 11]
    assert ledger.closed and sink.closed


def test_drop_before_first_record_resumes_from_pinned_head(fast_monitor_config):
    ledger = FakeLedger(head=7, sessions=[
        [ConnectivityFailure("eof")],
        [ev(7, 0), ev(8, 0)],
    ])
    sink = ListSink()
    monitor = LiveMonitor(ledger, POOL, sink, fast_monitor_config, verbose=False)

    assert asyncio.run(monitor.run()) == 2
    assert ledger.from_blocks == [7, 7]
    assert [r.sort_key for r in sink.records] == [(7, 0), (8, 0)]


def test_exhausted_retries_surface_failure(fast_monitor_config):
    drop = ConnectivityFailure("connection refused")
    ledger = FakeLedger(sessions=[[drop], [drop], [drop], [ev(1, 0)]])
    sink = ListSink()
    monitor = LiveMonitor(ledger, POOL, sink, fast_monitor_config, verbose=False)

    with pytest.raises(ConnectivityFailure) as excinfo:
        asyncio.run(monitor.run())

    assert excinfo.value.attempts == 3
    assert excinfo.value.component == "live"
    assert sink.records == []
    assert ledger.closed


def test_failures_counted_consecutively(fast_monitor_config):
    drop = ConnectivityFailure("reset")
    ledger = FakeLedger(sessions=[
        [drop], [drop], [ev(1, 0), drop], [drop], [ev(2, 0)],
    ])
    monitor = LiveMonitor(ledger, POOL, ListSink(), fast_monitor_config, verbose=False)
    assert asyncio.run(monitor.run()) == 2


def test_stop_between_deliveries(fast_monitor_config):
    async def scenario():
        stop = asyncio.Event()
        sink = ListSink(on_write=lambda record: stop.set())
        ledger = FakeLedger(sessions=[[ev(1, 0), ev(1, 1), ev(2, 0)]])
        monitor = LiveMonitor(ledger, POOL, sink, fast_monitor_config, verbose=False)
        delivered = await monitor.run(stop)
        return delivered, sink, ledger

    delivered, sink, ledger = asyncio.run(scenario())
    assert delivered == 1
    assert len(sink.records) == 1
    assert ledger.closed


def test_stop_while_waiting_for_events(fast_monitor_config):
    async def scenario():
        stop = asyncio.Event()
        ledger = FakeLedger(sessions=[[ev(1, 0), HANG]])
        monitor = LiveMonitor(ledger, POOL, ListSink(), fast_monitor_config, verbose=False)
        asyncio.get_running_loop().call_later(0.05, stop.set)
        delivered = await asyncio.wait_for(monitor.run(stop), timeout=5)
        return delivered, ledger

    delivered, ledger = asyncio.run(scenario())
    assert delivered == 1
    assert ledger.closed


def test_csv_sink_appends_complete_lines(tmp_path):
    path = tmp_path / "live" / "swaps.csv"
    rec = TradeRecord(5, 1.0, 2.5, "token0", "token1", 2.5, log_index=1)

    sink = CsvFileSink(path)
    sink.write(rec)
    sink.close()

    sink = CsvFileSink(path)
    sink.write(TradeRecord(6, 0.5, 0.25, "token1", "token0", 2.4, log_index=0))
    sink.close()

    dataset = read_dataset(path)
    assert len(dataset) == 2
    assert dataset[0] == rec


def test_replay_sink_tracks_model_gap(app_config):
    sink = ReplaySink(app_config)
    for i, price in enumerate([100.0, 101.0, 102.0], start=1):
        sink.write(TradeRecord(i, 1.0, 1.0, "token1", "token0", price))

    assert len(sink.model_records) == 3
    assert sink.model_records[-1].resulting_price == pytest.approx(102.0, rel=1e-9)
    assert sink.max_abs_gap < 1e-6


def test_replay_sink_stops_replaying_when_price_is_out_of_range(narrow_v3_config):
    inner = ListSink()
    sink = ReplaySink(narrow_v3_config, inner=inner)
    for i, price in enumerate([100.0, 5000.0, 100.0], start=1):
        sink.write(TradeRecord(i, 1.0, 1.0, "token1", "token0", price))

    assert sink.failed_at == 2
    assert isinstance(sink.error, InsufficientLiquidity)
    assert len(sink.model_records) == 1
    assert [r.block_or_step for r in inner.records] == [1, 2, 3]


def test_replay_failure_does_not_stop_the_monitor(narrow_v3_config):
    ledger = FakeLedger(sessions=[[ev(1, 0, 100.0), ev(2, 0, 5000.0), ev(3, 0, 100.0)]])
    inner = ListSink()
    sink = ReplaySink(narrow_v3_config, inner=inner)
    monitor = LiveMonitor(ledger, POOL, sink, narrow_v3_config, start_block=1, verbose=False)

    assert asyncio.run(monitor.run()) == 3
    assert sink.failed_at == 2
    assert len(inner.records) == 3
    assert inner.closed and ledger.closed
