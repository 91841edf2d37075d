"""Trade model — append-only ledger entry for every executed trade."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import ForeignKey, Index, String
from sqlmodel import SQLModel, Field, Column


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeReason(str, Enum):
    DCA = "DCA"
    DIP_BUY = "DIP_BUY"
    TAKE_PROFIT = "TAKE_PROFIT"
    REBALANCE = "REBALANCE"
    SPREAD_BUY = "SPREAD_BUY"
    SPREAD_SELL = "SPREAD_SELL"
    LIQUIDATE = "LIQUIDATE"
    MANUAL = "MANUAL"


class TradeStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class Trade(SQLModel, table=True):
    __tablename__ = "trade"
    __table_args__ = (Index("ix_trade_job_id_created_at", "job_id", "created_at"),)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    job_id: str = Field(
        sa_column=Column(String, ForeignKey("job.id", ondelete="CASCADE"), nullable=False)
    )
    side: TradeSide
    reason: TradeReason
    base_amount: float  # token units moved
    quote_amount: float  # USD notional
    price_usd: float
    tx_hash: str | None = None
    status: TradeStatus = Field(default=TradeStatus.PENDING, index=True)
    error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    executed_at: datetime | None = None
