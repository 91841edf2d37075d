"""Tests for the HTTP executor client and the simulated venue."""

import json

import httpx
import pytest

from accumulator.engine.errors import BalanceQueryFailed, ExecutionFailed
from accumulator.models.trade import TradeSide
from accumulator.services.executor_client import ExecutorClient, SimulatedExecutor, build_trading_ports
from accumulator.services.ports import TokenRef

from conftest import FakePricePort

TOKEN = TokenRef(symbol="TKN", address="0xaaa", chain="base")


def _executor(handler) -> ExecutorClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExecutorClient(base_url="https://exec.test/", api_key="k", client=http)


# ---------------------------------------------------------------------------
# 1. ExecutorClient
# ---------------------------------------------------------------------------

class TestExecutorClient:
    @pytest.mark.asyncio
    async def test_execute_posts_trade_and_parses_fill(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"filledAmount": "12.5", "executionPrice": 0.8, "txHash": "0xabc"})

        result = await _executor(handler).execute(TradeSide.BUY, TOKEN, 10.0)

        assert result.filled_amount == 12.5
        assert result.execution_price == 0.8
        assert result.external_ref == "0xabc"
        body = json.loads(seen[0].content)
        assert seen[0].url == "https://exec.test/trades"
        assert body == {
            "side": "BUY",
            "token": {"symbol": "TKN", "address": "0xaaa", "chain": "base"},
            "usdAmount": 10.0,
        }

    @pytest.mark.asyncio
    async def test_execute_error_payload(self):
        client = _executor(lambda r: httpx.Response(200, json={"error": "insufficient liquidity"}))
        with pytest.raises(ExecutionFailed, match="insufficient liquidity") as exc_info:
            await client.execute(TradeSide.SELL, TOKEN, 10.0)
        assert exc_info.value.reason == "insufficient liquidity"

    @pytest.mark.asyncio
    async def test_execute_http_failure(self):
        client = _executor(lambda r: httpx.Response(500, json={}))
        with pytest.raises(ExecutionFailed, match="HTTP 500"):
            await client.execute(TradeSide.BUY, TOKEN, 10.0)

    @pytest.mark.asyncio
    async def test_execute_malformed_response(self):
        client = _executor(lambda r: httpx.Response(200, json={"txHash": "0x1"}))
        with pytest.raises(ExecutionFailed, match="Malformed"):
            await client.execute(TradeSide.BUY, TOKEN, 10.0)

    @pytest.mark.asyncio
    async def test_balance(self):
        client = _executor(lambda r: httpx.Response(200, json={"balance": 42.0}))
        assert await client.balance(TOKEN) == 42.0

    @pytest.mark.asyncio
    async def test_balance_failure(self):
        client = _executor(lambda r: httpx.Response(404, json={}))
        with pytest.raises(BalanceQueryFailed):
            await client.balance(TOKEN)

    def test_requires_url(self):
        with pytest.raises(ValueError):
            ExecutorClient(base_url="")


# ---------------------------------------------------------------------------
# 2. SimulatedExecutor
# ---------------------------------------------------------------------------

class TestSimulatedExecutor:
    @pytest.mark.asyncio
    async def test_buy_then_sell_moves_balances(self):
        venue = SimulatedExecutor(FakePricePort(2.0), quote_balance=100.0)
        usdc = TokenRef(symbol="USDC")

        buy = await venue.execute(TradeSide.BUY, TOKEN, 20.0)
        assert buy.filled_amount == pytest.approx(10.0)
        assert buy.external_ref.startswith("sim-")
        assert await venue.balance(usdc) == pytest.approx(80.0)
        assert await venue.balance(TOKEN) == pytest.approx(10.0)

        sell = await venue.execute(TradeSide.SELL, TOKEN, 10.0)
        assert sell.filled_amount == pytest.approx(5.0)
        assert await venue.balance(usdc) == pytest.approx(90.0)

    @pytest.mark.asyncio
    async def test_buy_beyond_balance_fails(self):
        venue = SimulatedExecutor(FakePricePort(1.0), quote_balance=5.0)
        with pytest.raises(ExecutionFailed):
            await venue.execute(TradeSide.BUY, TOKEN, 10.0)


def test_build_ports_simulation():
    ports = build_trading_ports("simulation")
    assert isinstance(ports.execution, SimulatedExecutor)
    assert ports.balance is ports.execution


def test_build_ports_unknown_mode():
    with pytest.raises(ValueError):
        build_trading_ports("paper")
