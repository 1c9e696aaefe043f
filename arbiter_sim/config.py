"""
Configuration loading.

A run is parameterized by one YAML file holding a required `simulation`
section plus optional `pair`, `portfolio`, `uniswap`, `ledger`, `monitor`
and `output` sections. The file is loaded once per invocation into frozen
dataclasses that are passed explicitly to every component that needs them.
"""
from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

import yaml

from .errors import InvalidConfig

DEFAULT_CONFIG_PATH = Path("config.yml")

PROCESS_KINDS = ("GBM", "OU")
AMM_VARIANTS = ("Portfolio", "UniswapV3")
SINK_KINDS = ("console", "file", "replay")


@dataclass(frozen=True)
class SimulationConfig:
    """
    Parameters of the synthetic price process and the AMM under test.

    Invariants (checked by `validate()`): volatility >= 0, time_step > 0,
    horizon >= time_step, initial_price > 0, mean_reversion_rate >= 0.
    """
    process: str
    drift: float
    volatility: float
    initial_price: float
    time_step: float
    horizon: float
    amm_variant: str
    seed: int
    mean_reversion_rate: float = 0.0
    long_run_mean: Optional[float] = None

    @property
    def mean_level(self) -> float:
        return self.initial_price if self.long_run_mean is None else self.long_run_mean

    def validate(self) -> "SimulationConfig":
        if self.process not in PROCESS_KINDS:
            raise InvalidConfig(f"unknown process '{self.process}', expected one of {list(PROCESS_KINDS)}")
        if self.amm_variant not in AMM_VARIANTS:
            raise InvalidConfig(f"unknown amm_variant '{self.amm_variant}', expected one of {list(AMM_VARIANTS)}")
        for name in ("drift", "volatility", "initial_price", "time_step", "horizon", "mean_reversion_rate", "long_run_mean"):
            value = getattr(self, name)
            if value is not None and not math.isfinite(value):
                raise InvalidConfig(f"{name} must be finite, got {value}")
        if self.seed < 0:
            raise InvalidConfig(f"seed must be >= 0, got {self.seed}")
        if self.volatility < 0:
            raise InvalidConfig(f"volatility must be >= 0, got {self.volatility}")
        if self.time_step <= 0:
            raise InvalidConfig(f"time_step must be > 0, got {self.time_step}")
        if self.horizon < self.time_step:
            raise InvalidConfig(f"horizon ({self.horizon}) must be >= time_step ({self.time_step})")
        if self.initial_price <= 0:
            raise InvalidConfig(f"initial_price must be > 0, got {self.initial_price}")
        if self.mean_reversion_rate < 0:
            raise InvalidConfig(f"mean_reversion_rate must be >= 0, got {self.mean_reversion_rate}")
        return self


@dataclass(frozen=True)
class PairConfig:
    token0: str = "token0"
    token1: str = "token1"


@dataclass(frozen=True)
class PortfolioConfig:
    """RMM-01 pool: strike K, implied vol sigma, time to maturity tau (years)."""
    strike: float = 100.0
    sigma: float = 0.8
    tau: float = 1.0
    fee: float = 0.003
    liquidity: float = 1_000.0

    def validate(self) -> "PortfolioConfig":
        if self.strike <= 0 or self.sigma <= 0 or self.tau <= 0 or self.liquidity <= 0:
            raise InvalidConfig("portfolio strike, sigma, tau and liquidity must be > 0")
        if not 0.0 <= self.fee < 1.0:
            raise InvalidConfig(f"portfolio fee must be in [0, 1), got {self.fee}")
        return self


@dataclass(frozen=True)
class UniswapConfig:
    fee: float = 0.003
    tick_spacing: int = 60
    liquidity: float = 100_000.0
    range_ticks: int = 6_000

    def validate(self) -> "UniswapConfig":
        if not 0.0 <= self.fee < 1.0:
            raise InvalidConfig(f"uniswap fee must be in [0, 1), got {self.fee}")
        if self.tick_spacing <= 0 or self.range_ticks <= 0:
            raise InvalidConfig("uniswap tick_spacing and range_ticks must be > 0")
        if self.liquidity <= 0:
            raise InvalidConfig(f"uniswap liquidity must be > 0, got {self.liquidity}")
        return self


@dataclass(frozen=True)
class LedgerConfig:
    rpc_urls: Tuple[str, ...] = ()
    timeout: float = 30.0
    chunk_size_blocks: int = 2_000
    decimals0: int = 18
    decimals1: int = 18
    poll_interval: float = 12.0
    address: Optional[str] = None

    def validate(self) -> "LedgerConfig":
        if self.chunk_size_blocks <= 0:
            raise InvalidConfig(f"ledger chunk_size_blocks must be > 0, got {self.chunk_size_blocks}")
        if self.poll_interval <= 0 or self.timeout <= 0:
            raise InvalidConfig("ledger poll_interval and timeout must be > 0")
        return self


@dataclass(frozen=True)
class MonitorConfig:
    max_retries: int = 5
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    sink: str = "console"
    output: str = "results/live_swaps.csv"

    def validate(self) -> "MonitorConfig":
        if self.max_retries < 0:
            raise InvalidConfig(f"monitor max_retries must be >= 0, got {self.max_retries}")
        if self.backoff_base < 0 or self.backoff_factor < 1.0 or self.backoff_max < 0:
            raise InvalidConfig("monitor backoff_base/backoff_max must be >= 0 and backoff_factor >= 1")
        if self.sink not in SINK_KINDS:
            raise InvalidConfig(f"unknown monitor sink '{self.sink}', expected one of {list(SINK_KINDS)}")
        return self


@dataclass(frozen=True)
class OutputConfig:
    results_dir: str = "results"


@dataclass(frozen=True)
class AppConfig:
    simulation: SimulationConfig
    pair: PairConfig = field(default_factory=PairConfig)
    portfolio: PortfolioConfig = field(default_factory=PortfolioConfig)
    uniswap: UniswapConfig = field(default_factory=UniswapConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    source: Optional[Path] = None

    def with_simulation(self, **changes: Any) -> "AppConfig":
        """Return a copy with some simulation fields replaced (re-validated)."""
        sim = dataclasses.replace(self.simulation, **changes).validate()
        return dataclasses.replace(self, simulation=sim)


SECTIONS: Dict[str, Type] = {
    "simulation": SimulationConfig,
    "pair": PairConfig,
    "portfolio": PortfolioConfig,
    "uniswap": UniswapConfig,
    "ledger": LedgerConfig,
    "monitor": MonitorConfig,
    "output": OutputConfig,
}


def _normalize_choice(value: Any, choices: Tuple[str, ...], key: str) -> str:
    text = str(value).strip()
    for choice in choices:
        if text.lower() == choice.lower():
            return choice
    raise InvalidConfig(f"'{key}' must be one of {list(choices)}, got '{value}'")


def _coerce(cls: Type, name: str, value: Any, section: str) -> Any:
    """Coerce a YAML scalar into the field's declared type."""
    ftype = {f.name: f.type for f in dataclasses.fields(cls)}[name]
    key = f"{section}.{name}"
    if value is None:
        if "Optional" in str(ftype):
            return None
        raise InvalidConfig(f"'{key}' must not be empty")
    try:
        if ftype in ("float", "Optional[float]"):
            if isinstance(value, bool):
                raise TypeError
            return float(value)
        if ftype == "int":
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise TypeError
            return int(value)
        if ftype in ("str", "Optional[str]"):
            return str(value)
        if ftype == "Tuple[str, ...]":
            if isinstance(value, str):
                return tuple(value.split())
            return tuple(str(v) for v in value)
    except (TypeError, ValueError):
        raise InvalidConfig(f"'{key}' has invalid value {value!r} (expected {ftype})") from None
    return value


def _build_section(cls: Type, raw: Any, section: str):
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise InvalidConfig(f"section '{section}' must be a mapping")

    names = [f.name for f in dataclasses.fields(cls)]
    extra_keys = sorted(set(raw) - set(names))
    if extra_keys:
        raise InvalidConfig(f"unexpected keys in '{section}' section: {extra_keys}")

    required = [
        f.name for f in dataclasses.fields(cls)
        if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
    ]
    missing_keys = [name for name in required if name not in raw]
    if missing_keys:
        raise InvalidConfig(f"missing keys in '{section}' section: {missing_keys}")

    kwargs = {name: _coerce(cls, name, value, section) for name, value in raw.items()}
    if cls is SimulationConfig:
        kwargs["process"] = _normalize_choice(kwargs["process"], PROCESS_KINDS, "simulation.process")
        kwargs["amm_variant"] = _normalize_choice(kwargs["amm_variant"], AMM_VARIANTS, "simulation.amm_variant")
    if cls is MonitorConfig and "sink" in kwargs:
        kwargs["sink"] = _normalize_choice(kwargs["sink"], SINK_KINDS, "monitor.sink")
    obj = cls(**kwargs)
    return obj.validate() if hasattr(obj, "validate") else obj


def parse_config(config_data: Any, source: Optional[Path] = None) -> AppConfig:
    """Build an `AppConfig` from an already-parsed YAML document."""
    if not isinstance(config_data, dict):
        raise InvalidConfig(f"configuration root must be a mapping: {source}")

    extra_sections = sorted(set(config_data) - set(SECTIONS))
    if extra_sections:
        raise InvalidConfig(f"unexpected sections in configuration: {extra_sections}")
    if "simulation" not in config_data:
        raise InvalidConfig(f"'simulation' section missing in {source}")

    sections = {name: _build_section(cls, config_data.get(name), name) for name, cls in SECTIONS.items()}
    return AppConfig(source=source, **sections)


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """
    Load and validate the YAML configuration.

    A missing file, a file that is not valid YAML, or any invalid parameter is
    a startup failure (`InvalidConfig`); nothing is simulated or queried.
    """
    config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise InvalidConfig(f"missing configuration file: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            config_data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise InvalidConfig(f"cannot parse {config_path}: {exc}") from exc

    return parse_config(config_data, source=config_path)
