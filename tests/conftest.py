"""Shared fixtures: in-memory ledger, fake ports, controllable clock."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import StaticPool

from accumulator.database import build_engine, create_db_and_tables
from accumulator.engine.ledger import LedgerStore
from accumulator.schemas.job_config import JobConfig
from accumulator.services.ports import ExecutionResult, PriceQuote, TradingPorts

TOKEN_ADDRESS = "0x00000000000000000000000000000000000000aa"
QUOTE_ADDRESS = "0x00000000000000000000000000000000000000ee"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float):
        self.now = self.now + timedelta(hours=hours)


class FakePricePort:
    """Quotes `price` for every token unless an address has its own entry."""

    def __init__(self, price: float = 100.0):
        self.price = price
        self.prices: dict[str, float] = {}
        self.error: Exception | None = None
        self.calls = 0

    async def quote(self, token) -> PriceQuote:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return PriceQuote(price=self.prices.get(token.address, self.price), source="fake")


class GatedPricePort(FakePricePort):
    """Blocks every quote until `gate` is set."""

    def __init__(self, price: float = 100.0):
        super().__init__(price)
        self.gate = asyncio.Event()

    async def quote(self, token) -> PriceQuote:
        await self.gate.wait()
        return await super().quote(token)


class FakeBalancePort:
    def __init__(self, balance: float = 1000.0):
        self.value = balance
        self.error: Exception | None = None

    async def balance(self, token) -> float:
        if self.error is not None:
            raise self.error
        return self.value


class FakeExecutionPort:
    """Fills at the price port's current price and records every request."""

    def __init__(self, price_port: FakePricePort):
        self.price_port = price_port
        self.requests: list[tuple] = []
        self.error: Exception | None = None
        self.report_filled = True
        self.tx_hash: str | None = "0xfeed"
        self.fill_ratio = 1.0

    async def execute(self, side, token, usd_amount) -> ExecutionResult:
        self.requests.append((side, token, usd_amount))
        if self.error is not None:
            raise self.error
        price = self.price_port.price
        return ExecutionResult(
            filled_amount=usd_amount / price * self.fill_ratio if self.report_filled else 0.0,
            execution_price=price,
            external_ref=self.tx_hash,
        )


class FakePorts(TradingPorts):
    def __init__(self, price: float = 100.0, balance: float = 1000.0):
        price_port = FakePricePort(price)
        super().__init__(
            price=price_port,
            balance=FakeBalancePort(balance),
            execution=FakeExecutionPort(price_port),
        )


def make_config(dry_run: bool = False, quote: str = "USDC", min_trade_usd: float = 10.0, **accumulate) -> JobConfig:
    pair = {"base": "TKN", "baseAddress": TOKEN_ADDRESS, "quote": quote, "chain": "base"}
    if quote not in ("USDC", "USDT", "DAI"):
        pair["quoteAddress"] = QUOTE_ADDRESS
    return JobConfig.model_validate(
        {
            "mode": "accumulate",
            "pair": pair,
            "limits": {"minTradeUsd": min_trade_usd},
            "accumulate": {
                "dca_amount": 10,
                "dca_interval_hours": 4,
                "dip_buy_threshold": 5,
                "dip_buy_multiplier": 2,
                "max_accumulation_usd": 1000,
                **accumulate,
            },
            "dryRun": dry_run,
        }
    )


@pytest.fixture
def db_engine():
    eng = build_engine("sqlite://", poolclass=StaticPool)
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def ledger(db_engine) -> LedgerStore:
    return LedgerStore(db_engine)


@pytest.fixture
def ports() -> FakePorts:
    return FakePorts()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_job(ledger):
    def _make(config: JobConfig | None = None, **state):
        config = config or make_config()
        job = ledger.create_job(
            token_address=config.token_address,
            token_symbol=config.pair.base,
            chain=config.pair.chain,
            quote_token=config.pair.quote,
            config=config.model_dump(mode="json"),
        )
        if state:
            job = ledger.update_working_state(job.id, state)
        return job

    return _make

