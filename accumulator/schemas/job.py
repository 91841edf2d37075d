"""Pydantic read models for jobs and trades."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from accumulator.models import JobMode, JobStatus, TradeReason, TradeSide, TradeStatus


class TradeRead(BaseModel):
    id: str
    job_id: str
    side: TradeSide
    reason: TradeReason
    base_amount: float
    quote_amount: float
    price_usd: float
    tx_hash: str | None
    status: TradeStatus
    error: str | None
    created_at: datetime
    executed_at: datetime | None

    model_config = {"from_attributes": True}


class JobRead(BaseModel):
    id: str
    token_address: str
    token_symbol: str
    chain: str
    quote_token: str
    mode: JobMode
    status: JobStatus
    last_dca_buy_time: datetime | None
    recent_high: float
    recent_high_time: datetime | None
    total_accumulated: float
    token_balance: float
    avg_buy_price: float
    last_error: str | None
    error_count: int
    config: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    paused_at: datetime | None

    model_config = {"from_attributes": True}


class JobStatusReport(BaseModel):
    job: JobRead
    engine_attached: bool
    # Per-job guard is held: a tick or an administrative operation (pause, liquidate, ...) is running
    job_locked: bool
    consecutive_failures: int
    trades_this_hour: int
    next_tick: str | None
    recent_trades: list[TradeRead]


class TradeStatusUpdate(BaseModel):
    status: TradeStatus
    tx_hash: str | None = None
    error: str | None = None
