"""Job model — one row per token position under management."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import JSON
from sqlmodel import SQLModel, Field, Column


class JobMode(str, Enum):
    ACCUMULATE = "ACCUMULATE"
    LIQUIDITY = "LIQUIDITY"


class JobStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    LIQUIDATING = "LIQUIDATING"
    ERROR = "ERROR"


def _new_id() -> str:
    return uuid.uuid4().hex


class Job(SQLModel, table=True):
    __tablename__ = "job"

    id: str = Field(default_factory=_new_id, primary_key=True)
    token_address: str = Field(unique=True, index=True)  # always lowercase
    token_symbol: str
    chain: str = "base"
    quote_token: str = "ETH"
    mode: JobMode = JobMode.ACCUMULATE
    status: JobStatus = Field(default=JobStatus.IDLE, index=True)

    # Accumulation working state
    last_dca_buy_time: datetime | None = None
    recent_high: float = 0.0
    recent_high_time: datetime | None = None
    total_accumulated: float = 0.0  # USD cost basis of token_balance
    token_balance: float = 0.0

    # Diagnostics
    last_error: str | None = None
    error_count: int = 0

    # Strategy parameters, stored verbatim
    config: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    paused_at: datetime | None = None

    @property
    def avg_buy_price(self) -> float:
        """Derived from the running totals; never stored."""
        if self.token_balance > 0:
            return self.total_accumulated / self.token_balance
        return 0.0
