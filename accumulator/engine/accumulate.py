"""Accumulation engine: DCA + dip buying + optional take-profit for one job.

Each tick fetches the price and the quote balance, then decides, in priority
order (first match wins, at most one trade per tick):

1. Take-profit sell when the gain over the average buy price is large enough.
2. Dip buy when the price dropped far enough below the tracked recent high.
3. Scheduled DCA buy when the interval has elapsed (or no buy has happened yet).

Working state is copied before a decision and only replaced with what the
ledger committed, so a failure anywhere before the commit leaves both the
database row and the in-memory mirror untouched.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from accumulator.engine.errors import (
    BalanceQueryFailed,
    PersistenceError,
    PriceUnavailable,
    TickError,
)
from accumulator.engine.ledger import LedgerStore, TradeFields
from accumulator.models.job import Job
from accumulator.models.trade import Trade, TradeReason, TradeSide
from accumulator.schemas.job_config import JobConfig
from accumulator.services.ports import ExecutionResult, TokenRef, TradingPorts
from accumulator.utils.clock import ensure_utc, format_price, hours_between, utcnow
from accumulator.utils.constants import RECENT_HIGH_DECAY_HOURS

logger = logging.getLogger(__name__)

# Balances below this are treated as fully sold
DUST = 1e-12


class TickAction(str, Enum):
    NONE = "NONE"
    SKIPPED = "SKIPPED"
    TAKE_PROFIT = "TAKE_PROFIT"
    DIP_BUY = "DIP_BUY"
    DCA = "DCA"


@dataclass
class AccumulationState:
    last_dca_buy_time: datetime | None = None
    recent_high: float = 0.0
    recent_high_time: datetime | None = None
    total_accumulated: float = 0.0
    token_balance: float = 0.0

    @property
    def avg_buy_price(self) -> float:
        if self.token_balance > 0:
            return self.total_accumulated / self.token_balance
        return 0.0

    @classmethod
    def from_job(cls, job: Job) -> "AccumulationState":
        return cls(
            last_dca_buy_time=ensure_utc(job.last_dca_buy_time),
            recent_high=job.recent_high,
            recent_high_time=ensure_utc(job.recent_high_time),
            total_accumulated=job.total_accumulated,
            token_balance=job.token_balance,
        )


@dataclass
class TickOutcome:
    action: TickAction
    price: float | None = None
    trade: Trade | None = None
    dry_run: bool = False
    message: str = ""

    @property
    def traded(self) -> bool:
        return self.trade is not None


TradeNotifier = Callable[[Trade, AccumulationState], Awaitable[None]]


def sell_cost_basis(state: AccumulationState, filled: float) -> tuple[float, float]:
    """Remaining (total_accumulated, token_balance) after selling `filled` units.

    Average-cost method: the sold units carry the current average price out of
    the cost basis, so the average of what remains is unchanged. This is the
    rule replay_totals applies to the trade history.
    """
    filled = min(filled, state.token_balance)
    balance = state.token_balance - filled
    if balance <= DUST:
        return 0.0, 0.0
    total = max(state.total_accumulated - state.avg_buy_price * filled, 0.0)
    return total, balance


class AccumulationEngine:
    """Owns one job's working state; ticks are serialized by `self.lock`."""

    def __init__(
        self,
        job: Job,
        config: JobConfig,
        ports: TradingPorts,
        ledger: LedgerStore,
        clock: Callable[[], datetime] = utcnow,
        notify: TradeNotifier | None = None,
        trade_counter=None,
        lock: asyncio.Lock | None = None,
    ):
        if config.accumulate is None:
            raise ValueError("AccumulationEngine needs an accumulate config section")
        self.job_id = job.id
        self.symbol = job.token_symbol
        self.config = config
        self.acc = config.accumulate
        self.limits = config.limits
        self.dry_run = config.dry_run
        self.ports = ports
        self.ledger = ledger
        self.clock = clock
        self.notify = notify
        self.trade_counter = trade_counter
        self.lock = lock or asyncio.Lock()

        self.token = TokenRef(symbol=job.token_symbol, address=job.token_address, chain=job.chain)
        self.quote_token = TokenRef(
            symbol=config.pair.quote, address=config.pair.quote_address, chain=job.chain
        )
        self._state = AccumulationState.from_job(job)

        logger.info(
            f"[{self.symbol}] Engine initialized from DB state: balance={self._state.token_balance:.6f} "
            f"accumulated=${self._state.total_accumulated:.2f} last_dca={self._state.last_dca_buy_time}"
        )

    def current_state(self) -> AccumulationState:
        """Snapshot of the working state; no side effects."""
        return replace(self._state)

    def is_locked(self) -> bool:
        return self.lock.locked()

    def refresh(self, job: Job):
        """Re-mirror state from a job row (after an administrative write)."""
        self._state = AccumulationState.from_job(job)

    async def tick(self) -> TickOutcome:
        """Run one decision, or skip if the previous tick is still in flight."""
        if self.lock.locked():
            logger.warning(f"[{self.symbol}] Tick skipped - previous tick still running")
            return TickOutcome(action=TickAction.SKIPPED, message="previous tick still running")

        async with self.lock:
            return await self._tick_once()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _tick_once(self) -> TickOutcome:
        logger.info(f"[{self.symbol}] Accumulate tick starting")
        now = self.clock()

        try:
            price = await self._fetch_price()
            quote_balance_usd = await self._fetch_quote_balance_usd()
        except Exception as e:
            logger.error(f"[{self.symbol}] Tick aborted: {e}")
            raise TickError(self.job_id, str(e)) from e

        working = replace(self._state)
        logger.info(
            f"[{self.symbol}] Price: ${format_price(price)} | Recent high: ${format_price(working.recent_high)} "
            f"| Quote balance: ${quote_balance_usd:.2f}"
        )

        # Fields to write if the tick ends without a trade
        pending: dict[str, Any] = {}
        if self._update_recent_high(working, price, now):
            pending.update(recent_high=working.recent_high, recent_high_time=working.recent_high_time)

        if self._take_profit_due(working, price):
            outcome = await self._take_profit(working, price, now, pending)
        elif self._dip_percent(working, price) >= self.acc.dip_buy_threshold:
            amount = self.acc.dca_amount * self.acc.dip_buy_multiplier
            logger.info(
                f"[{self.symbol}] Dip detected: {self._dip_percent(working, price):.2f}% below recent high"
            )
            outcome = await self._buy(working, TradeReason.DIP_BUY, amount, price, quote_balance_usd, now, pending)
        elif self._dca_due(working, now):
            outcome = await self._buy(
                working, TradeReason.DCA, self.acc.dca_amount, price, quote_balance_usd, now, pending
            )
        else:
            outcome = TickOutcome(action=TickAction.NONE, price=price, message="nothing due")

        if not outcome.traded and pending:
            self._persist_working_state(pending)
        return outcome

    async def _fetch_price(self) -> float:
        quote = await self.ports.price.quote(self.token)
        price = quote.price
        if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
            raise PriceUnavailable(f"Invalid price for {self.token}: {price!r}")
        return float(price)

    async def _fetch_quote_balance_usd(self) -> float:
        balance = await self.ports.balance.balance(self.quote_token)
        if not isinstance(balance, (int, float)) or not math.isfinite(balance) or balance < 0:
            raise BalanceQueryFailed(f"Invalid {self.quote_token.symbol} balance: {balance!r}")
        if self.config.pair.is_stable_quote:
            return float(balance)
        rate = await self.ports.price.quote(self.quote_token)
        if not math.isfinite(rate.price) or rate.price <= 0:
            raise PriceUnavailable(f"Invalid price for quote token {self.quote_token}: {rate.price!r}")
        return float(balance) * rate.price

    # ------------------------------------------------------------------
    # Decision helpers
    # ------------------------------------------------------------------

    def _update_recent_high(self, state: AccumulationState, price: float, now: datetime) -> bool:
        """Track the recent high; a high older than the decay window is replaced."""
        stale = hours_between(state.recent_high_time, now) > RECENT_HIGH_DECAY_HOURS
        if price > state.recent_high or stale:
            state.recent_high = price
            state.recent_high_time = now
            return True
        return False

    def _dip_percent(self, state: AccumulationState, price: float) -> float:
        if state.recent_high <= 0:
            return 0.0
        return (state.recent_high - price) / state.recent_high * 100

    def _dca_due(self, state: AccumulationState, now: datetime) -> bool:
        return hours_between(state.last_dca_buy_time, now) >= self.acc.dca_interval_hours

    def _take_profit_due(self, state: AccumulationState, price: float) -> bool:
        if self.acc.take_profit_percent <= 0 or state.token_balance <= 0:
            return False
        if state.token_balance * price < self.limits.min_trade_usd:
            return False
        avg_price = state.avg_buy_price
        if avg_price <= 0:
            return False
        gain = (price - avg_price) / avg_price * 100
        return gain >= self.acc.take_profit_percent

    def _buy_rejection(self, state: AccumulationState, amount: float, price: float, quote_balance_usd: float) -> str | None:
        if amount < self.limits.min_trade_usd:
            return f"buy ${amount:.2f} below minimum ${self.limits.min_trade_usd:.2f}"
        position_usd = state.token_balance * price
        if position_usd >= self.acc.max_accumulation_usd:
            return f"max accumulation reached (${position_usd:.2f} >= ${self.acc.max_accumulation_usd:.2f})"
        if quote_balance_usd < amount:
            return f"insufficient {self.quote_token.symbol} balance (${quote_balance_usd:.2f} < ${amount:.2f})"
        return None

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _take_profit(
        self, working: AccumulationState, price: float, now: datetime, pending: dict[str, Any]
    ) -> TickOutcome:
        sell_value = working.token_balance * price * self.acc.take_profit_sell_percent / 100
        if sell_value < self.limits.min_trade_usd:
            msg = f"take-profit sell ${sell_value:.2f} below minimum ${self.limits.min_trade_usd:.2f}"
            logger.info(f"[{self.symbol}] {msg}")
            return TickOutcome(action=TickAction.NONE, price=price, message=msg)

        if self.dry_run:
            logger.info(f"[{self.symbol}] [DRY RUN] Would SELL ${sell_value:.2f} (take-profit)")
            pending.update(recent_high=price, recent_high_time=now)
            return TickOutcome(action=TickAction.TAKE_PROFIT, price=price, dry_run=True)

        logger.info(f"[{self.symbol}] Executing take-profit: SELL ${sell_value:.2f}")
        result = await self._execute(TradeSide.SELL, sell_value)
        filled = min(self._filled_amount(result, sell_value, price), working.token_balance)
        total, balance = sell_cost_basis(working, filled)

        trade = await self._record(
            TradeFields(
                side=TradeSide.SELL,
                reason=TradeReason.TAKE_PROFIT,
                base_amount=filled,
                quote_amount=sell_value,
                price_usd=result.execution_price if result.execution_price > 0 else price,
                tx_hash=result.external_ref,
            ),
            {
                "token_balance": balance,
                "total_accumulated": total,
                "recent_high": price,
                "recent_high_time": now,
            },
            result,
        )
        return TickOutcome(action=TickAction.TAKE_PROFIT, price=price, trade=trade)

    async def _buy(
        self,
        working: AccumulationState,
        reason: TradeReason,
        amount: float,
        price: float,
        quote_balance_usd: float,
        now: datetime,
        pending: dict[str, Any],
    ) -> TickOutcome:
        rejection = self._buy_rejection(working, amount, price, quote_balance_usd)
        if rejection:
            logger.info(f"[{self.symbol}] {reason.value} skipped: {rejection}")
            return TickOutcome(action=TickAction.NONE, price=price, message=rejection)

        # Bookkeeping applied on success, real or dry run
        bookkeeping: dict[str, Any] = {
            "recent_high": working.recent_high,
            "recent_high_time": working.recent_high_time,
        }
        if reason == TradeReason.DIP_BUY:
            bookkeeping.update(recent_high=price, recent_high_time=now)
        else:
            bookkeeping["last_dca_buy_time"] = now
        action = TickAction(reason.value)

        if self.dry_run:
            logger.info(f"[{self.symbol}] [DRY RUN] Would BUY ${amount:.2f} ({reason.value})")
            pending.update(bookkeeping)
            return TickOutcome(action=action, price=price, dry_run=True)

        logger.info(f"[{self.symbol}] Executing {reason.value}: BUY ${amount:.2f}")
        result = await self._execute(TradeSide.BUY, amount)
        filled = self._filled_amount(result, amount, price)

        trade = await self._record(
            TradeFields(
                side=TradeSide.BUY,
                reason=reason,
                base_amount=filled,
                quote_amount=amount,
                price_usd=result.execution_price if result.execution_price > 0 else price,
                tx_hash=result.external_ref,
            ),
            {
                **bookkeeping,
                "total_accumulated": working.total_accumulated + amount,
                "token_balance": working.token_balance + filled,
            },
            result,
        )
        return TickOutcome(action=action, price=price, trade=trade)

    async def _execute(self, side: TradeSide, usd_amount: float) -> ExecutionResult:
        try:
            return await self.ports.execution.execute(side, self.token, usd_amount)
        except Exception as e:
            logger.error(f"[{self.symbol}] {side.value} ${usd_amount:.2f} failed: {e}")
            raise TickError(self.job_id, f"execution failed: {e}") from e

    def _filled_amount(self, result: ExecutionResult, usd_amount: float, price: float) -> float:
        """Units moved; derived from the notional when the venue reports none."""
        if result.filled_amount and result.filled_amount > 0:
            return result.filled_amount
        fill_price = result.execution_price if result.execution_price > 0 else price
        logger.warning(f"[{self.symbol}] Venue reported no filled amount; deriving from ${usd_amount:.2f} @ {fill_price}")
        return usd_amount / fill_price

    async def _record(self, fields: TradeFields, delta: dict[str, Any], result: ExecutionResult) -> Trade:
        try:
            trade, job = self.ledger.record_trade_and_update_state(self.job_id, fields, delta)
        except PersistenceError as e:
            # The venue already moved funds; leave enough in the log to reconcile by hand
            logger.critical(
                f"[{self.symbol}] Trade executed but NOT recorded: {fields.side.value} {fields.reason.value} "
                f"{result.filled_amount} @ {result.execution_price} tx={result.external_ref}: {e}"
            )
            raise TickError(self.job_id, str(e)) from e

        self._state = AccumulationState.from_job(job)
        if self.trade_counter is not None:
            self.trade_counter.increment()

        logger.info(
            f"[{self.symbol}] {fields.reason.value} {fields.side.value} saved: ${fields.quote_amount:.2f} "
            f"| balance={self._state.token_balance:.6f} accumulated=${self._state.total_accumulated:.2f} "
            f"avg=${format_price(self._state.avg_buy_price)}"
        )
        await self._notify(trade)
        return trade

    def _persist_working_state(self, fields: dict[str, Any]):
        try:
            job = self.ledger.update_working_state(self.job_id, fields)
        except PersistenceError as e:
            raise TickError(self.job_id, str(e)) from e
        self._state = AccumulationState.from_job(job)

    async def _notify(self, trade: Trade):
        if self.notify is None:
            return
        try:
            await self.notify(trade, self.current_state())
        except Exception as e:
            logger.warning(f"[{self.symbol}] Trade notification failed: {e}")
