"""Ledger store — durable Job and Trade rows.

Every mutating operation runs in one transaction that first locks the job row
(SELECT ... FOR UPDATE on PostgreSQL; SQLite serializes writers anyway), so
writes for one job never interleave while unrelated jobs proceed in parallel.
A trade only becomes visible through record_trade_and_update_state, which
commits the trade row and the job's running totals together or not at all.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from accumulator.engine.errors import ConflictError, JobNotFoundError, PersistenceError
from accumulator.models.job import Job, JobMode, JobStatus
from accumulator.models.trade import Trade, TradeReason, TradeSide, TradeStatus
from accumulator.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Job columns the engine may write while ticking
ACCUMULATION_FIELDS = frozenset({
    "last_dca_buy_time",
    "recent_high",
    "recent_high_time",
    "total_accumulated",
    "token_balance",
})


@dataclass
class TradeFields:
    side: TradeSide
    reason: TradeReason
    base_amount: float
    quote_amount: float
    price_usd: float
    tx_hash: str | None = None


def _check_state_delta(fields: dict[str, Any]):
    unknown = set(fields) - ACCUMULATION_FIELDS
    if unknown:
        raise ValueError(f"Not accumulation state fields: {', '.join(sorted(unknown))}")
    if fields.get("token_balance", 0.0) < 0:
        raise ValueError(f"token_balance cannot be negative: {fields['token_balance']}")
    if fields.get("total_accumulated", 0.0) < 0:
        raise ValueError(f"total_accumulated cannot be negative: {fields['total_accumulated']}")
    if fields.get("recent_high", 0.0) < 0:
        raise ValueError(f"recent_high cannot be negative: {fields['recent_high']}")


class LedgerStore:
    def __init__(self, bind=None):
        if bind is None:
            from accumulator.database import engine as bind
        self.engine = bind

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _lock_job(self, session: Session, job_id: str) -> Job:
        job = session.exec(select(Job).where(Job.id == job_id).with_for_update()).first()
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    # ------------------------------------------------------------------
    # Job reads
    # ------------------------------------------------------------------

    def get_job(self, token_address: str) -> Job | None:
        """Look up a job by token address (case-insensitive)."""
        with self._session() as session:
            return session.exec(
                select(Job).where(Job.token_address == token_address.lower())
            ).first()

    def get_job_by_id(self, job_id: str) -> Job | None:
        with self._session() as session:
            return session.get(Job, job_id)

    def require_job(self, job_id: str) -> Job:
        job = self.get_job_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        with self._session() as session:
            stmt = select(Job).order_by(Job.updated_at.desc())
            if status is not None:
                stmt = stmt.where(Job.status == status)
            return list(session.exec(stmt).all())

    # ------------------------------------------------------------------
    # Job writes
    # ------------------------------------------------------------------

    def create_job(
        self,
        token_address: str,
        token_symbol: str,
        config: dict[str, Any],
        chain: str = "base",
        quote_token: str = "ETH",
        mode: JobMode = JobMode.ACCUMULATE,
    ) -> Job:
        job = Job(
            token_address=token_address.lower(),
            token_symbol=token_symbol,
            chain=chain,
            quote_token=quote_token,
            mode=mode,
            config=config,
            status=JobStatus.IDLE,
        )
        try:
            with self._session() as session, session.begin():
                session.add(job)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not create job for {token_address}: {e}") from e

        logger.info(f"Job created: {job.token_symbol} ({job.id})")
        return job

    def transition(
        self,
        job_id: str,
        target: JobStatus,
        allowed_from: Iterable[JobStatus],
        error: str | None = None,
    ) -> tuple[JobStatus, Job]:
        """Move a job to `target` if its current status is in `allowed_from`.

        Applies the timestamp side effects of entering `target` and returns
        (previous_status, job).
        """
        allowed = set(allowed_from)
        now = utcnow()
        try:
            with self._session() as session, session.begin():
                job = self._lock_job(session, job_id)
                previous = job.status
                if previous not in allowed:
                    if previous == JobStatus.LIQUIDATING and target == JobStatus.RUNNING:
                        raise ConflictError(f"{job.token_symbol}: liquidation in progress")
                    raise ConflictError(
                        f"Cannot move {job.token_symbol} from {previous.value} to {target.value}"
                    )

                job.status = target
                if target == JobStatus.RUNNING:
                    job.started_at = now
                    job.paused_at = None
                    job.last_error = None
                elif target == JobStatus.PAUSED:
                    job.paused_at = now
                elif target == JobStatus.IDLE:
                    job.started_at = None
                    job.paused_at = None
                elif target == JobStatus.ERROR:
                    job.last_error = error
                    job.error_count += 1
                job.updated_at = now
                session.add(job)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Status update for job {job_id} failed: {e}") from e

        logger.info(f"Job {job.token_symbol} status: {previous.value} -> {target.value}")
        return previous, job

    def update_job_config(self, job_id: str, config: dict[str, Any]) -> Job:
        try:
            with self._session() as session, session.begin():
                job = self._lock_job(session, job_id)
                job.config = config
                job.updated_at = utcnow()
                session.add(job)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Config update for job {job_id} failed: {e}") from e
        return job

    def update_working_state(self, job_id: str, fields: dict[str, Any]) -> Job:
        """Touch up accumulation fields without a trade (e.g. recent-high decay)."""
        _check_state_delta(fields)
        try:
            with self._session() as session, session.begin():
                job = self._lock_job(session, job_id)
                for key, value in fields.items():
                    setattr(job, key, value)
                job.updated_at = utcnow()
                session.add(job)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Working state update for job {job_id} failed: {e}") from e
        return job

    def record_trade_and_update_state(
        self,
        job_id: str,
        trade_fields: TradeFields,
        state_delta: dict[str, Any],
    ) -> tuple[Trade, Job]:
        """Insert one trade and update the job's running totals atomically."""
        _check_state_delta(state_delta)
        now = utcnow()
        try:
            with self._session() as session, session.begin():
                job = self._lock_job(session, job_id)
                trade = Trade(
                    job_id=job_id,
                    side=trade_fields.side,
                    reason=trade_fields.reason,
                    base_amount=trade_fields.base_amount,
                    quote_amount=trade_fields.quote_amount,
                    price_usd=trade_fields.price_usd,
                    tx_hash=trade_fields.tx_hash,
                    status=TradeStatus.EXECUTED if trade_fields.tx_hash else TradeStatus.PENDING,
                    created_at=now,
                    executed_at=now if trade_fields.tx_hash else None,
                )
                session.add(trade)
                for key, value in state_delta.items():
                    setattr(job, key, value)
                job.updated_at = now
                session.add(job)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Trade for job {job_id} not recorded: {e}") from e

        logger.info(
            f"Trade recorded: {trade.side.value} {trade.base_amount:.6f} @ ${trade.price_usd} "
            f"({trade.reason.value}, job={job_id}, trade={trade.id})"
        )
        return trade, job

    def reset_job(self, job_id: str) -> Job:
        """Return a job to IDLE with all working state and counters zeroed."""
        try:
            with self._session() as session, session.begin():
                job = self._lock_job(session, job_id)
                job.status = JobStatus.IDLE
                job.last_dca_buy_time = None
                job.recent_high = 0.0
                job.recent_high_time = None
                job.total_accumulated = 0.0
                job.token_balance = 0.0
                job.started_at = None
                job.paused_at = None
                job.last_error = None
                job.error_count = 0
                job.updated_at = utcnow()
                session.add(job)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Reset of job {job_id} failed: {e}") from e

        logger.info(f"Job {job.token_symbol} reset to IDLE")
        return job

    def delete_job(self, job_id: str):
        """Delete a job; its trades go with it (ON DELETE CASCADE)."""
        try:
            with self._session() as session, session.begin():
                self._lock_job(session, job_id)
                session.execute(delete(Job).where(Job.id == job_id))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Delete of job {job_id} failed: {e}") from e
        logger.info(f"Job deleted ({job_id})")

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def get_trade_history(self, job_id: str, limit: int = 50, offset: int = 0) -> list[Trade]:
        """Trades for a job, newest first."""
        with self._session() as session:
            stmt = (
                select(Trade)
                .where(Trade.job_id == job_id)
                .order_by(Trade.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    def list_trades(self, job_id: str | None = None, limit: int = 50, offset: int = 0) -> list[Trade]:
        with self._session() as session:
            stmt = select(Trade).order_by(Trade.created_at.desc())
            if job_id is not None:
                stmt = stmt.where(Trade.job_id == job_id)
            return list(session.exec(stmt.offset(offset).limit(limit)).all())

    def get_trade(self, trade_id: str) -> Trade | None:
        with self._session() as session:
            return session.get(Trade, trade_id)

    def update_trade_status(
        self,
        trade_id: str,
        status: TradeStatus,
        tx_hash: str | None = None,
        error: str | None = None,
    ) -> Trade:
        """Backfill execution status on an existing trade; amounts stay immutable."""
        try:
            with self._session() as session, session.begin():
                trade = session.get(Trade, trade_id)
                if trade is None:
                    raise JobNotFoundError(f"Trade {trade_id} not found")
                trade.status = status
                if tx_hash is not None:
                    trade.tx_hash = tx_hash
                if error is not None:
                    trade.error = error
                if status == TradeStatus.EXECUTED:
                    trade.executed_at = utcnow()
                session.add(trade)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Status update for trade {trade_id} failed: {e}") from e
        return trade

    def audit_totals(self, job_id: str) -> dict[str, float]:
        """Compare the job's stored totals with a replay of its trade history."""
        job = self.require_job(job_id)
        with self._session() as session:
            trades = session.exec(
                select(Trade).where(Trade.job_id == job_id).order_by(Trade.created_at, Trade.id)
            ).all()
        total, balance = replay_totals(trades)
        return {
            "stored_total_accumulated": job.total_accumulated,
            "stored_token_balance": job.token_balance,
            "replayed_total_accumulated": total,
            "replayed_token_balance": balance,
            "total_drift": job.total_accumulated - total,
            "balance_drift": job.token_balance - balance,
        }


def replay_totals(trades: Iterable[Trade], dust: float = 1e-12) -> tuple[float, float]:
    """(total_accumulated, token_balance) implied by trades in execution order.

    Buys add their notional and units. Sells remove units at the running
    average cost; a position sold down to dust resets both totals.
    """
    total = 0.0
    balance = 0.0
    for trade in trades:
        if trade.status == TradeStatus.FAILED:
            continue
        if trade.side == TradeSide.BUY:
            total += trade.quote_amount
            balance += trade.base_amount
            continue
        sold = min(trade.base_amount, balance)
        avg = total / balance if balance > 0 else 0.0
        balance -= sold
        if balance <= dust:
            total, balance = 0.0, 0.0
        else:
            total = max(total - avg * sold, 0.0)
    return total, balance
