"""Contracts for the external collaborators the engine consumes.

Implementations raise PriceUnavailable, BalanceQueryFailed or ExecutionFailed
(accumulator.engine.errors); they never return partially parsed results.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from accumulator.models.trade import TradeSide


@dataclass(frozen=True)
class TokenRef:
    """Identity of a token on a chain. Address wins over symbol when present."""
    symbol: str
    address: str | None = None
    chain: str = "base"

    def __str__(self) -> str:
        return self.symbol if not self.address else f"{self.symbol}({self.address[:10]})"


@dataclass
class PriceQuote:
    price: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = ""


@dataclass
class ExecutionResult:
    filled_amount: float  # token units bought or sold
    execution_price: float
    external_ref: str | None = None  # tx hash


class PricePort(Protocol):
    async def quote(self, token: TokenRef) -> PriceQuote: ...


class BalancePort(Protocol):
    async def balance(self, token: TokenRef) -> float: ...


class ExecutionPort(Protocol):
    async def execute(self, side: TradeSide, token: TokenRef, usd_amount: float) -> ExecutionResult: ...


@dataclass
class TradingPorts:
    price: PricePort
    balance: BalancePort
    execution: ExecutionPort
