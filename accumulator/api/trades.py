"""Trade history API."""

from fastapi import APIRouter, Depends, HTTPException

from accumulator.api.deps import get_ledger, http_error
from accumulator.engine.errors import AccumulatorError
from accumulator.engine.ledger import LedgerStore
from accumulator.models.trade import TradeStatus
from accumulator.schemas.job import TradeRead, TradeStatusUpdate

router = APIRouter(prefix="/api/trades", tags=["trades"])


@router.get("", response_model=list[TradeRead])
def list_trades(
    job_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
    ledger: LedgerStore = Depends(get_ledger),
):
    return ledger.list_trades(job_id=job_id, limit=limit, offset=offset)


@router.get("/{trade_id}", response_model=TradeRead)
def get_trade(trade_id: str, ledger: LedgerStore = Depends(get_ledger)):
    trade = ledger.get_trade(trade_id)
    if not trade:
        raise HTTPException(status_code=404, detail="Trade not found")
    return trade


@router.patch("/{trade_id}", response_model=TradeRead)
def update_trade_status(
    trade_id: str,
    data: TradeStatusUpdate,
    ledger: LedgerStore = Depends(get_ledger),
):
    """Backfill the execution status reported later by the venue."""
    try:
        return ledger.update_trade_status(trade_id, TradeStatus(data.status), data.tx_hash, data.error)
    except AccumulatorError as e:
        raise http_error(e)
