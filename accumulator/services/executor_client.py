"""Execution venue clients.

ExecutorClient talks to the remote execution service over HTTP. The service
does the slow part (routing the swap, waiting for settlement) and answers
with a structured fill; this module is the only place that knows its wire
format.

SimulatedExecutor fills every order at the live price quote and keeps an
in-memory quote balance, for running the engine without a venue.
"""

import logging
import math
import time

import httpx

from accumulator.config import settings
from accumulator.engine.errors import BalanceQueryFailed, ExecutionFailed
from accumulator.models.trade import TradeSide
from accumulator.services.ports import ExecutionResult, PricePort, TokenRef, TradingPorts
from accumulator.services.price_feed import DexScreenerClient

logger = logging.getLogger(__name__)


class ExecutorClient:
    """BalancePort and ExecutionPort backed by the remote execution service."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.executor_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.executor_api_key
        self.timeout = timeout or settings.executor_timeout_seconds
        self._client = client
        self._owns_client = client is None
        if not self.base_url:
            raise ValueError("executor_url is not configured; set ACC_EXECUTOR_URL or use simulation mode")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def balance(self, token: TokenRef) -> float:
        ident = token.address or token.symbol
        client = await self._get_client()
        try:
            resp = await client.get(f"{self.base_url}/balances/{token.chain}/{ident}")
            resp.raise_for_status()
            value = float(resp.json()["balance"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise BalanceQueryFailed(f"Balance query for {token} failed: {e}") from e

        if not math.isfinite(value) or value < 0:
            raise BalanceQueryFailed(f"Invalid balance for {token}: {value}")
        logger.debug(f"Balance {token}: {value}")
        return value

    async def execute(self, side: TradeSide, token: TokenRef, usd_amount: float) -> ExecutionResult:
        payload = {
            "side": side.value,
            "token": {"symbol": token.symbol, "address": token.address, "chain": token.chain},
            "usdAmount": round(usd_amount, 2),
        }
        logger.info(f"Executor request: {side.value} ${usd_amount:.2f} of {token}")
        started = time.monotonic()
        client = await self._get_client()
        try:
            resp = await client.post(f"{self.base_url}/trades", json=payload)
            data = resp.json()
        except httpx.HTTPError as e:
            raise ExecutionFailed(f"Executor request failed: {e}") from e
        except ValueError as e:
            raise ExecutionFailed(f"Executor returned invalid JSON (HTTP {resp.status_code})") from e

        if resp.status_code >= 400 or data.get("error"):
            raise ExecutionFailed(str(data.get("error") or f"HTTP {resp.status_code}"))

        try:
            result = ExecutionResult(
                filled_amount=float(data["filledAmount"]),
                execution_price=float(data["executionPrice"]),
                external_ref=data.get("txHash"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ExecutionFailed(f"Malformed executor response: {data}") from e

        logger.info(
            f"Executor filled {result.filled_amount:.6f} {token.symbol} @ {result.execution_price} "
            f"in {time.monotonic() - started:.1f}s (tx={result.external_ref})"
        )
        return result

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class SimulatedExecutor:
    """Paper-trading venue: fills at the current quote, tracks balances in memory."""

    def __init__(self, price_port: PricePort, quote_symbol: str = "USDC", quote_balance: float = 1000.0):
        self.price_port = price_port
        self.quote_symbol = quote_symbol.upper()
        self.quote_balance = quote_balance
        self.base_balances: dict[str, float] = {}
        self._counter = 0

    async def balance(self, token: TokenRef) -> float:
        if token.symbol.upper() == self.quote_symbol:
            return self.quote_balance
        return self.base_balances.get(token.symbol, 0.0)

    async def execute(self, side: TradeSide, token: TokenRef, usd_amount: float) -> ExecutionResult:
        quote = await self.price_port.quote(token)
        units = usd_amount / quote.price
        held = self.base_balances.get(token.symbol, 0.0)

        if side == TradeSide.BUY:
            if usd_amount > self.quote_balance:
                raise ExecutionFailed(f"Simulated balance ${self.quote_balance:.2f} < ${usd_amount:.2f}")
            self.quote_balance -= usd_amount
            self.base_balances[token.symbol] = held + units
        else:
            units = min(units, held) if held > 0 else units
            self.quote_balance += units * quote.price
            self.base_balances[token.symbol] = max(held - units, 0.0)

        self._counter += 1
        ref = f"sim-{int(time.time() * 1000)}-{self._counter}"
        logger.info(f"SIMULATED {side.value} {units:.6f} {token.symbol} for ${usd_amount:.2f} ({ref})")
        return ExecutionResult(filled_amount=units, execution_price=quote.price, external_ref=ref)


def build_trading_ports(execution_mode: str | None = None, quote_symbol: str = "USDC") -> TradingPorts:
    """Wire the price feed and the configured venue into one TradingPorts."""
    mode = (execution_mode or settings.execution_mode).lower()
    price = DexScreenerClient()
    if mode == "simulation":
        logger.info("Execution mode: simulation (no live orders)")
        venue = SimulatedExecutor(price, quote_symbol=quote_symbol)
    elif mode == "live":
        logger.info(f"Execution mode: live via {settings.executor_url}")
        venue = ExecutorClient()
    else:
        raise ValueError(f"Unknown execution mode '{mode}'; expected 'simulation' or 'live'")
    return TradingPorts(price=price, balance=venue, execution=venue)
