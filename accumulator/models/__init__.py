"""Database models."""

from accumulator.models.job import Job, JobMode, JobStatus
from accumulator.models.trade import Trade, TradeReason, TradeSide, TradeStatus

__all__ = [
    "Job",
    "JobMode",
    "JobStatus",
    "Trade",
    "TradeReason",
    "TradeSide",
    "TradeStatus",
]
