"""
Error taxonomy shared by every component.

Each error names the component and operation that failed, plus the offending
input (step index, block number or line number), so the CLI can print a
single actionable line and exit non-zero.
"""
from __future__ import annotations

from typing import Optional


class ArbiterError(Exception):
    """Base class for all fatal errors raised by the simulation/backtest core."""

    def __init__(self, message: str, component: str = "core", operation: str = "run"):
        super().__init__(message)
        self.message = message
        self.component = component
        self.operation = operation

    def __str__(self) -> str:
        return f"{self.component}.{self.operation}: {self.message}"


class InvalidConfig(ArbiterError):
    """Malformed or out-of-range parameters, detected before any step runs."""

    def __init__(self, message: str, component: str = "config", operation: str = "load"):
        super().__init__(message, component, operation)


class InsufficientLiquidity(ArbiterError):
    """An AMM step would break the pool's reserve invariant."""

    def __init__(
        self,
        message: str,
        component: str = "amm",
        operation: str = "apply",
        step: Optional[int] = None,
    ):
        super().__init__(message, component, operation)
        self.step = step

    def at_step(self, step: int) -> "InsufficientLiquidity":
        self.step = step
        return self

    def __str__(self) -> str:
        where = f" (step {self.step})" if self.step is not None else ""
        return f"{self.component}.{self.operation}: {self.message}{where}"


class RangeUnavailable(ArbiterError):
    """The ledger could not serve the requested block range in full."""

    def __init__(
        self,
        message: str,
        last_good_block: Optional[int],
        component: str = "ingest",
        operation: str = "export",
    ):
        super().__init__(message, component, operation)
        self.last_good_block = last_good_block

    def __str__(self) -> str:
        last = "none" if self.last_good_block is None else str(self.last_good_block)
        return f"{self.component}.{self.operation}: {self.message} (last good block: {last})"


class MalformedRecord(ArbiterError):
    """A persisted record (or raw ledger event) failed schema validation."""

    def __init__(
        self,
        message: str,
        line: Optional[int] = None,
        component: str = "ingest",
        operation: str = "import",
    ):
        super().__init__(message, component, operation)
        self.line = line

    def __str__(self) -> str:
        where = f"line {self.line}: " if self.line is not None else ""
        return f"{self.component}.{self.operation}: {where}{self.message}"


class ConnectivityFailure(ArbiterError):
    """The ledger is unreachable (transient for the live monitor, fatal for export)."""

    def __init__(
        self,
        message: str,
        component: str = "ledger",
        operation: str = "query",
        attempts: int = 1,
    ):
        super().__init__(message, component, operation)
        self.attempts = attempts
