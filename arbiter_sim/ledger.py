"""
Ledger access: the collaborator interface the ingestion and live paths consume,
a web3-backed implementation, and Swap-event normalization.

    get_events(address, block_range)         -> list of raw Swap events
    subscribe_events(address, from_block)    -> async stream of raw Swap events
    block_number()                           -> current chain head

Raw events follow web3's decoded-log shape:
    {"blockNumber", "logIndex", "transactionHash",
     "args": {"amount0", "amount1", "sqrtPriceX96", "liquidity", "tick"}}
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol

import requests
from eth_defi.provider.multi_provider import create_multi_provider_web3
from web3 import Web3

from .config import LedgerConfig, PairConfig
from .errors import ConnectivityFailure, InvalidConfig, MalformedRecord, RangeUnavailable
from .records import BlockRange, TradeRecord
from .utils import Q96

RawEvent = Mapping[str, Any]

# ---------------- ABIs ----------------
SWAP_EVENT_ABI = {
    "anonymous": False,
    "inputs": [
        {"indexed": True,  "internalType": "address", "name": "sender", "type": "address"},
        {"indexed": True,  "internalType": "address", "name": "recipient", "type": "address"},
        {"indexed": False, "internalType": "int256",  "name": "amount0", "type": "int256"},
        {"indexed": False, "internalType": "int256",  "name": "amount1", "type": "int256"},
        {"indexed": False, "internalType": "uint160", "name": "sqrtPriceX96", "type": "uint160"},
        {"indexed": False, "internalType": "uint128", "name": "liquidity", "type": "uint128"},
        {"indexed": False, "internalType": "int24",   "name": "tick", "type": "int24"}
    ],
    "name": "Swap", "type": "event"
}
SWAP_SIGNATURE = "Swap(address,address,int256,int256,uint160,uint128,int24)"
SWAP_TOPIC0 = Web3.to_hex(Web3.keccak(text=SWAP_SIGNATURE))

TRANSPORT_ERRORS = (requests.exceptions.ConnectionError, requests.exceptions.Timeout, ConnectionError, TimeoutError)


class Ledger(Protocol):
    async def get_events(self, address: str, block_range: BlockRange) -> List[RawEvent]: ...

    def subscribe_events(self, address: str, from_block: Optional[int] = None) -> AsyncIterator[RawEvent]: ...

    async def block_number(self) -> int: ...

    async def close(self) -> None: ...


def check_address(address: Optional[str], component: str, operation: str) -> str:
    """Reject an empty or malformed pool address before any ledger query."""
    if not address or not str(address).strip():
        raise InvalidConfig("pool address is required", component=component, operation=operation)
    address = str(address).strip()
    if not Web3.is_address(address):
        raise InvalidConfig(f"malformed pool address {address!r}", component=component, operation=operation)
    return address


def event_key(raw: RawEvent) -> tuple[int, int]:
    return int(raw["blockNumber"]), int(raw["logIndex"])


# =============================================================================
# Normalization
# =============================================================================

def sqrt_price_x96_to_price(sqrt_price_x96: int, decimals0: int, decimals1: int) -> float:
    """token1 per token0 in human units."""
    s = int(sqrt_price_x96) / Q96
    return s * s * 10 ** (decimals0 - decimals1)


def normalize_swap_event(raw: RawEvent, pair: PairConfig, ledger: LedgerConfig) -> TradeRecord:
    """
    Map one raw Swap event to a TradeRecord.

    Uniswap sign convention: a positive amount is paid into the pool, a
    negative one leaves it; exactly one side is positive for a real swap.
    """
    try:
        block = int(raw["blockNumber"])
        log_index = int(raw["logIndex"])
        args = raw["args"]
        amount0 = int(args["amount0"])
        amount1 = int(args["amount1"])
        sqrt_price = int(args["sqrtPriceX96"])
    except (KeyError, TypeError, ValueError) as exc:
        where = f"block {raw.get('blockNumber', '?')} log {raw.get('logIndex', '?')}" if hasattr(raw, "get") else "event"
        raise MalformedRecord(f"{where}: swap event missing field {exc}", component="ledger",
                              operation="normalize") from None

    scale0 = 10 ** ledger.decimals0
    scale1 = 10 ** ledger.decimals1
    if amount0 > 0 or (amount0 == 0 and amount1 < 0):
        asset_in, asset_out = pair.token0, pair.token1
        amount_in, amount_out = amount0 / scale0, -amount1 / scale1
    else:
        asset_in, asset_out = pair.token1, pair.token0
        amount_in, amount_out = amount1 / scale1, -amount0 / scale0

    return TradeRecord(
        block_or_step=block,
        amount_in=float(max(amount_in, 0.0)),
        amount_out=float(max(amount_out, 0.0)),
        asset_in=asset_in,
        asset_out=asset_out,
        resulting_price=sqrt_price_x96_to_price(sqrt_price, ledger.decimals0, ledger.decimals1),
        log_index=log_index,
    )


# =============================================================================
# web3 implementation
# =============================================================================

class Web3Ledger:
    """
    Swap-event access over JSON-RPC.

    Connection: `create_multi_provider_web3` across `rpc_urls` (failover).
    Blocking RPC calls run in worker threads so the event loop keeps going.
    Use as an async context manager; the connection is dropped on exit.
    """

    def __init__(self, config: LedgerConfig, w3: Optional[Web3] = None):
        self.config = config
        self._w3 = w3

    @property
    def w3(self) -> Web3:
        if self._w3 is None:
            if not self.config.rpc_urls:
                raise InvalidConfig("no ledger.rpc_urls configured", component="ledger", operation="connect")
            line = " ".join(self.config.rpc_urls)
            self._w3 = create_multi_provider_web3(line, request_kwargs={"timeout": self.config.timeout})
        return self._w3

    async def __aenter__(self) -> "Web3Ledger":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        self._w3 = None

    async def _call(self, fn, *args, operation: str = "query"):
        try:
            return await asyncio.to_thread(fn, *args)
        except TRANSPORT_ERRORS as exc:
            raise ConnectivityFailure(f"ledger unreachable: {exc}", operation=operation) from exc

    async def block_number(self) -> int:
        return int(await self._call(lambda: self.w3.eth.block_number, operation="block_number"))

    def _decode(self, address: str, logs: List[Any]) -> List[Dict[str, Any]]:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=[SWAP_EVENT_ABI])
        events = []
        for log in logs:
            evt = contract.events.Swap().process_log(log)
            events.append({
                "blockNumber": int(evt["blockNumber"]),
                "logIndex": int(evt["logIndex"]),
                "transactionHash": Web3.to_hex(evt["transactionHash"]),
                "args": dict(evt["args"]),
            })
        return events

    async def get_events(self, address: str, block_range: BlockRange) -> List[RawEvent]:
        """All Swap events of `address` in the inclusive range, chunked by `chunk_size_blocks`."""
        pool = Web3.to_checksum_address(check_address(address, component="ledger", operation="get_events"))
        events: List[RawEvent] = []
        last_good: Optional[int] = block_range.start_block - 1 if block_range.start_block > 0 else None
        cur = block_range.start_block
        while cur <= block_range.end_block:
            to_blk = min(cur + self.config.chunk_size_blocks - 1, block_range.end_block)
            filt = {"fromBlock": cur, "toBlock": to_blk, "address": pool, "topics": [SWAP_TOPIC0]}
            try:
                logs = await self._call(self.w3.eth.get_logs, filt, operation="get_events")
            except (ConnectivityFailure, InvalidConfig):
                raise
            except Exception as exc:  # noqa: BLE001 - provider errors are untyped
                raise RangeUnavailable(
                    f"ledger could not serve blocks [{cur}, {to_blk}]: {str(exc)[:200]}",
                    last_good_block=last_good,
                ) from exc
            events.extend(self._decode(address, logs))
            last_good = to_blk
            cur = to_blk + 1
        events.sort(key=event_key)
        return events

    async def subscribe_events(self, address: str, from_block: Optional[int] = None) -> AsyncIterator[RawEvent]:
        """Poll the chain head and yield new Swap events in (block, log index) order."""
        next_block = from_block if from_block is not None else await self.block_number()
        while True:
            head = await self.block_number()
            if head >= next_block:
                for event in await self.get_events(address, BlockRange(next_block, head)):
                    yield event
                next_block = head + 1
            await asyncio.sleep(self.config.poll_interval)
