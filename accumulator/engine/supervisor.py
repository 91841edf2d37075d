"""Job supervisor — maps tokens to jobs and drives the job lifecycle.

    IDLE ──start──► RUNNING ──pause──► PAUSED ──resume──► RUNNING
                       │                  │
                       ├──liquidate───────┴──► LIQUIDATING ──done──► IDLE
                       └──repeated tick failures──► ERROR ──resume──► RUNNING

Every administrative operation takes the job's guard lock before touching its
status, so it waits for an in-flight tick instead of racing it. Status checks
themselves happen under a row lock inside the ledger.
"""

import asyncio
import logging
from typing import Callable

from accumulator.config import settings
from accumulator.engine.accumulate import (
    DUST,
    AccumulationEngine,
    AccumulationState,
    TickOutcome,
    TickAction,
    sell_cost_basis,
)
from accumulator.engine.errors import ConfigError, ConflictError, JobNotFoundError, TickError
from accumulator.engine.ledger import LedgerStore, TradeFields
from accumulator.engine.scheduler import TickScheduler
from accumulator.models.job import Job, JobMode, JobStatus
from accumulator.models.trade import Trade, TradeReason, TradeSide
from accumulator.schemas.job import JobRead, JobStatusReport, TradeRead
from accumulator.schemas.job_config import JobConfig
from accumulator.services.ports import TokenRef, TradingPorts
from accumulator.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Statuses each transition may start from
START_FROM = {JobStatus.IDLE, JobStatus.PAUSED, JobStatus.ERROR, JobStatus.RUNNING}
RESUME_FROM = {JobStatus.PAUSED, JobStatus.ERROR}
PAUSE_FROM = {JobStatus.RUNNING}
LIQUIDATE_FROM = {JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.LIQUIDATING}
LIQUIDATION_DONE_FROM = {JobStatus.LIQUIDATING}
ESCALATE_FROM = {JobStatus.RUNNING}


class JobSupervisor:
    def __init__(
        self,
        ledger: LedgerStore,
        ports: TradingPorts,
        scheduler: TickScheduler | None = None,
        announcer=None,
        max_consecutive_failures: int | None = None,
        clock: Callable = utcnow,
    ):
        self.ledger = ledger
        self.ports = ports
        self.scheduler = scheduler or TickScheduler()
        self.announcer = announcer
        self.max_consecutive_failures = max_consecutive_failures or settings.max_consecutive_failures
        self.clock = clock
        self.engines: dict[str, AccumulationEngine] = {}
        self._failures: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Engine attachment
    # ------------------------------------------------------------------

    def _attach(self, job: Job, config: JobConfig) -> AccumulationEngine:
        engine = AccumulationEngine(
            job,
            config,
            self.ports,
            self.ledger,
            clock=self.clock,
            notify=self._trade_notifier(job, config),
            trade_counter=self.scheduler.trade_counter,
            lock=self._lock_for(job.id),
        )
        self.engines[job.id] = engine
        self._failures[job.id] = 0
        self.scheduler.add_tick_job(job.id, config.strategy.tick_interval_seconds, self.run_tick)
        return engine

    def _detach(self, job_id: str):
        self.scheduler.remove_tick_job(job_id)
        self.engines.pop(job_id, None)
        self._failures.pop(job_id, None)

    def _trade_notifier(self, job: Job, config: JobConfig):
        if self.announcer is None:
            return None
        max_budget = config.accumulate.max_accumulation_usd if config.accumulate else 0.0

        async def _notify(trade: Trade, state: AccumulationState):
            await self.announcer.announce_trade(
                token=job.token_symbol,
                chain=job.chain,
                reason=trade.reason,
                amount_usd=trade.quote_amount,
                token_amount=trade.base_amount,
                price=trade.price_usd,
                total_accumulated=state.total_accumulated,
                max_budget=max_budget,
                tx_hash=trade.tx_hash,
            )

        return _notify

    @staticmethod
    def _config_of(job: Job) -> JobConfig:
        try:
            return JobConfig.model_validate(job.config)
        except ValueError as e:
            raise ConfigError(f"Stored config for {job.token_symbol} is invalid: {e}") from e

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_job(self, config: JobConfig) -> Job:
        """Create the job for this token on first encounter, or resume it."""
        if config.mode != "accumulate" or config.accumulate is None:
            raise ConfigError(f"Mode '{config.mode}' is not supported by this engine")

        token_address = config.token_address
        stored_config = config.model_dump(mode="json")
        job = self.ledger.get_job(token_address)

        if job is None:
            logger.info(f"Creating new job for token {token_address}")
            job = self.ledger.create_job(
                token_address=token_address,
                token_symbol=config.pair.base,
                chain=config.pair.chain,
                quote_token=config.pair.quote,
                mode=JobMode.ACCUMULATE,
                config=stored_config,
            )
        else:
            logger.info(
                f"Resuming existing job {job.id}: status={job.status.value} "
                f"balance={job.token_balance} accumulated=${job.total_accumulated:.2f}"
            )
            if job.status == JobStatus.LIQUIDATING:
                raise ConflictError(f"{job.token_symbol}: liquidation in progress")

        async with self._lock_for(job.id):
            if job.config != stored_config:
                self.ledger.update_job_config(job.id, stored_config)
            previous, job = self.ledger.transition(job.id, JobStatus.RUNNING, START_FROM)
            if previous == JobStatus.ERROR:
                logger.warning(f"[{job.token_symbol}] Resuming job that was in ERROR state")
            self._attach(job, config)
        return job

    async def tick(self, job_id: str) -> TickOutcome:
        """Run one tick now; failures count toward ERROR escalation and re-raise."""
        engine = self.engines.get(job_id)
        if engine is None:
            job = self.ledger.require_job(job_id)
            raise ConflictError(f"{job.token_symbol} is not running ({job.status.value})")

        # Another process (the CLI) may have paused or liquidated the job
        job = self.ledger.require_job(job_id)
        if job.status != JobStatus.RUNNING:
            self._detach(job_id)
            raise ConflictError(f"{job.token_symbol} is {job.status.value}; tick cancelled")

        try:
            outcome = await engine.tick()
        except TickError as e:
            await self._record_failure(job_id, e)
            raise

        if outcome.action != TickAction.SKIPPED:
            self._failures[job_id] = 0
        return outcome

    async def run_tick(self, job_id: str) -> TickOutcome | None:
        """Scheduler entry point: never lets one tick's failure escape into the next."""
        try:
            return await self.tick(job_id)
        except TickError:
            return None
        except ConflictError as e:
            logger.warning(f"Tick for {job_id} ignored: {e}")
            self.scheduler.remove_tick_job(job_id)
            return None
        except Exception as e:
            logger.error(f"Unexpected tick error for {job_id}: {e}", exc_info=True)
            await self._record_failure(job_id, e)
            return None

    async def _record_failure(self, job_id: str, error: Exception):
        count = self._failures.get(job_id, 0) + 1
        self._failures[job_id] = count
        logger.error(f"Tick failed for {job_id} ({count}/{self.max_consecutive_failures}): {error}")
        if count < self.max_consecutive_failures:
            return

        message = f"{count} consecutive tick failures; last: {error}"
        async with self._lock_for(job_id):
            try:
                _, job = self.ledger.transition(job_id, JobStatus.ERROR, ESCALATE_FROM, error=message)
            except (ConflictError, JobNotFoundError) as e:
                logger.warning(f"Escalation for {job_id} skipped: {e}")
                return
            finally:
                self._detach(job_id)

        logger.error(f"[{job.token_symbol}] Job halted in ERROR: {message}")
        if self.announcer is not None:
            try:
                await self.announcer.announce_error(job.token_symbol, message)
            except Exception as e:
                logger.warning(f"Error announcement failed: {e}")

    async def pause(self, job_id: str) -> Job:
        async with self._lock_for(job_id):
            _, job = self.ledger.transition(job_id, JobStatus.PAUSED, PAUSE_FROM)
            self._detach(job_id)
        return job

    async def resume(self, job_id: str) -> Job:
        job = self.ledger.require_job(job_id)
        config = self._config_of(job)
        async with self._lock_for(job_id):
            previous, job = self.ledger.transition(job_id, JobStatus.RUNNING, RESUME_FROM)
            if previous == JobStatus.ERROR:
                logger.warning(f"[{job.token_symbol}] Resuming from ERROR (last error: {job.last_error})")
            self._attach(job, config)
        return job

    async def liquidate(self, job_id: str) -> Job:
        """Sell the whole tracked position and return the job to IDLE.

        If the sell fails or only partly fills, the job stays LIQUIDATING;
        calling again sells what is left.
        """
        async with self._lock_for(job_id):
            _, job = self.ledger.transition(job_id, JobStatus.LIQUIDATING, LIQUIDATE_FROM)
            self._detach(job_id)
            config = self._config_of(job)
            token = TokenRef(symbol=job.token_symbol, address=job.token_address, chain=job.chain)

            if job.token_balance > DUST:
                price = (await self.ports.price.quote(token)).price
                value = job.token_balance * price
                if config.dry_run:
                    logger.info(f"[{job.token_symbol}] [DRY RUN] Would SELL ${value:.2f} (liquidation)")
                elif value < config.limits.min_trade_usd:
                    logger.warning(
                        f"[{job.token_symbol}] Position worth ${value:.2f} is below the minimum trade; not sold"
                    )
                else:
                    remaining = await self._sell_all(job, token, price, value)
                    if remaining > DUST and remaining * price >= config.limits.min_trade_usd:
                        # Partial fill; stay LIQUIDATING so the next call sells the rest
                        logger.warning(
                            f"[{job.token_symbol}] Liquidation partially filled; {remaining:.6f} still held"
                        )
                        return self.ledger.require_job(job_id)

            _, job = self.ledger.transition(job_id, JobStatus.IDLE, LIQUIDATION_DONE_FROM)
        return job

    async def _sell_all(self, job: Job, token: TokenRef, price: float, value: float) -> float:
        """Sell the tracked balance; returns what is still held afterwards."""
        logger.info(f"[{job.token_symbol}] Liquidating: SELL {job.token_balance:.6f} (~${value:.2f})")
        result = await self.ports.execution.execute(TradeSide.SELL, token, value)
        filled = result.filled_amount if result.filled_amount > 0 else value / price
        state = AccumulationState.from_job(job)
        filled = min(filled, state.token_balance)
        total, balance = sell_cost_basis(state, filled)

        trade, _ = self.ledger.record_trade_and_update_state(
            job.id,
            TradeFields(
                side=TradeSide.SELL,
                reason=TradeReason.LIQUIDATE,
                base_amount=filled,
                quote_amount=value,
                price_usd=result.execution_price if result.execution_price > 0 else price,
                tx_hash=result.external_ref,
            ),
            {"token_balance": balance, "total_accumulated": total},
        )
        self.scheduler.trade_counter.increment()

        if self.announcer is not None:
            try:
                await self.announcer.announce_trade(
                    token=job.token_symbol,
                    chain=job.chain,
                    reason=TradeReason.LIQUIDATE,
                    amount_usd=value,
                    token_amount=filled,
                    price=trade.price_usd,
                    total_accumulated=total,
                    max_budget=self._config_of(job).accumulate.max_accumulation_usd,
                    tx_hash=trade.tx_hash,
                )
            except Exception as e:
                logger.warning(f"Liquidation announcement failed: {e}")
        return balance

    async def reset(self, job_id: str) -> Job:
        """Administrative reset: IDLE with all working state and counters zeroed."""
        async with self._lock_for(job_id):
            self._detach(job_id)
            job = self.ledger.reset_job(job_id)
        return job

    async def delete(self, job_id: str):
        async with self._lock_for(job_id):
            self._detach(job_id)
            self.ledger.delete_job(job_id)
        self._locks.pop(job_id, None)

    def status(self, job_id: str, trade_limit: int = 10) -> JobStatusReport:
        job = self.ledger.require_job(job_id)
        engine = self.engines.get(job_id)
        trades = self.ledger.get_trade_history(job_id, limit=trade_limit)
        return JobStatusReport(
            job=JobRead.model_validate(job),
            engine_attached=engine is not None,
            job_locked=self._lock_for(job_id).locked(),
            consecutive_failures=self._failures.get(job_id, 0),
            trades_this_hour=self.scheduler.trade_counter.count,
            next_tick=self.scheduler.next_run(job_id),
            recent_trades=[TradeRead.model_validate(t) for t in trades],
        )

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def restore_running_jobs(self) -> list[Job]:
        """Re-attach engines for jobs left RUNNING by a crashed process."""
        restored = []
        for job in self.ledger.list_jobs(JobStatus.RUNNING):
            try:
                config = self._config_of(job)
            except ConfigError as e:
                logger.error(str(e))
                continue
            logger.info(f"[{job.token_symbol}] Restoring running job {job.id}")
            self._attach(job, config)
            restored.append(job)
        return restored

    async def shutdown(self):
        """Stop firing ticks, let in-flight ticks finish, then pause every running job."""
        job_ids = list(self.engines)
        for job_id in job_ids:
            self.scheduler.remove_tick_job(job_id)
        self.scheduler.stop()

        for job_id in job_ids:
            async with self._lock_for(job_id):
                try:
                    self.ledger.transition(job_id, JobStatus.PAUSED, PAUSE_FROM)
                except (ConflictError, JobNotFoundError) as e:
                    logger.warning(f"Could not pause {job_id} on shutdown: {e}")
                self._detach(job_id)
