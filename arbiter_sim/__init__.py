"""
DEX simulation and backtest orchestration: synthetic price processes driving
AMM models, plus ingestion and live monitoring of on-chain swap events.
"""
from . import amm
from . import backtest
from . import config
from . import engine
from . import errors
from . import ingest
from . import ledger
from . import live
from . import processes
from . import records
from . import uniswapv3_pool
from . import utils

__all__ = [
    'amm', 'backtest', 'config', 'engine', 'errors', 'ingest', 'ledger',
    'live', 'processes', 'records', 'uniswapv3_pool', 'utils',
]
