import asyncio
import dataclasses
import math

import pytest

from arbiter_sim.config import AppConfig, MonitorConfig, SimulationConfig, UniswapConfig
from arbiter_sim.utils import Q96

HANG = "hang"


def make_sim(**overrides) -> SimulationConfig:
    params = dict(
        process="GBM",
        drift=0.05,
        volatility=0.2,
        initial_price=100.0,
        time_step=0.01,
        horizon=1.0,
        amm_variant="Portfolio",
        seed=42,
    )
    params.update(overrides)
    return SimulationConfig(**params)


def swap_event(block, log_index, amount0, amount1, price):
    return {
        "blockNumber": block,
        "logIndex": log_index,
        "transactionHash": f"0x{block:064x}",
        "args": {
            "amount0": int(amount0),
            "amount1": int(amount1),
            "sqrtPriceX96": int(math.sqrt(price) * Q96),
            "liquidity": 10 ** 20,
            "tick": 0,
        },
    }


class FakeLedger:
    """In-memory ledger.

    `events` serve range queries; `sessions` script the live subscription: one
    list per (re)subscribe holding raw events, exceptions to raise, or HANG.
    """

    def __init__(self, events=None, error=None, sessions=None, head=0):
        self.events = list(events or [])
        self.error = error
        self.sessions = list(sessions or [])
        self.head = head
        self.calls = []
        self.from_blocks = []
        self.closed = False

    async def get_events(self, address, block_range):
        self.calls.append((address, block_range))
        if self.error is not None:
            raise self.error
        return [e for e in self.events if e["blockNumber"] in block_range]

    async def subscribe_events(self, address, from_block=None):
        self.from_blocks.append(from_block)
        session = self.sessions.pop(0) if self.sessions else []
        for item in session:
            await asyncio.sleep(0)
            if item == HANG:
                await asyncio.sleep(3600)
            elif isinstance(item, Exception):
                raise item
            elif from_block is None or item["blockNumber"] >= from_block:
                yield item

    async def block_number(self):
        return self.head

    async def close(self):
        self.closed = True


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(simulation=make_sim())


@pytest.fixture
def v3_config() -> AppConfig:
    return AppConfig(simulation=make_sim(amm_variant="UniswapV3"))


@pytest.fixture
def narrow_v3_config() -> AppConfig:
    return AppConfig(
        simulation=make_sim(amm_variant="UniswapV3"),
        uniswap=UniswapConfig(fee=0.003, tick_spacing=60, liquidity=100_000.0, range_ticks=120),
    )


@pytest.fixture
def fast_monitor_config(app_config) -> AppConfig:
    return dataclasses.replace(app_config, monitor=MonitorConfig(max_retries=2, backoff_base=0.0))
