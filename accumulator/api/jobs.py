"""Job lifecycle API."""

from fastapi import APIRouter, Depends

from accumulator.api.deps import get_supervisor, http_error
from accumulator.engine.errors import AccumulatorError
from accumulator.engine.supervisor import JobSupervisor
from accumulator.models.job import JobStatus
from accumulator.schemas.job import JobRead, JobStatusReport, TradeRead
from accumulator.schemas.job_config import JobConfig

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("", response_model=list[JobRead])
def list_jobs(
    status: JobStatus | None = None,
    supervisor: JobSupervisor = Depends(get_supervisor),
):
    return supervisor.ledger.list_jobs(status)


@router.post("", response_model=JobRead, status_code=201)
async def start_job(config: JobConfig, supervisor: JobSupervisor = Depends(get_supervisor)):
    """Start (or resume) the job for the configured token."""
    try:
        return await supervisor.start_job(config)
    except AccumulatorError as e:
        raise http_error(e)


@router.get("/{job_id}", response_model=JobStatusReport)
def get_job(job_id: str, supervisor: JobSupervisor = Depends(get_supervisor)):
    try:
        return supervisor.status(job_id)
    except AccumulatorError as e:
        raise http_error(e)


@router.get("/{job_id}/trades", response_model=list[TradeRead])
def job_trades(
    job_id: str,
    limit: int = 50,
    offset: int = 0,
    supervisor: JobSupervisor = Depends(get_supervisor),
):
    try:
        supervisor.ledger.require_job(job_id)
    except AccumulatorError as e:
        raise http_error(e)
    return supervisor.ledger.get_trade_history(job_id, limit=limit, offset=offset)


@router.get("/{job_id}/audit")
def audit_job(job_id: str, supervisor: JobSupervisor = Depends(get_supervisor)):
    """Stored running totals next to a replay of the trade history."""
    try:
        return supervisor.ledger.audit_totals(job_id)
    except AccumulatorError as e:
        raise http_error(e)


@router.post("/{job_id}/tick")
async def tick_job(job_id: str, supervisor: JobSupervisor = Depends(get_supervisor)):
    """Manually run one tick of a running job."""
    try:
        outcome = await supervisor.tick(job_id)
    except AccumulatorError as e:
        raise http_error(e)
    return {
        "action": outcome.action.value,
        "price": outcome.price,
        "dry_run": outcome.dry_run,
        "message": outcome.message,
        "trade": TradeRead.model_validate(outcome.trade) if outcome.trade else None,
    }


@router.post("/{job_id}/pause", response_model=JobRead)
async def pause_job(job_id: str, supervisor: JobSupervisor = Depends(get_supervisor)):
    try:
        return await supervisor.pause(job_id)
    except AccumulatorError as e:
        raise http_error(e)


@router.post("/{job_id}/resume", response_model=JobRead)
async def resume_job(job_id: str, supervisor: JobSupervisor = Depends(get_supervisor)):
    try:
        return await supervisor.resume(job_id)
    except AccumulatorError as e:
        raise http_error(e)


@router.post("/{job_id}/liquidate", response_model=JobRead)
async def liquidate_job(job_id: str, supervisor: JobSupervisor = Depends(get_supervisor)):
    try:
        return await supervisor.liquidate(job_id)
    except AccumulatorError as e:
        raise http_error(e)


@router.post("/{job_id}/reset", response_model=JobRead)
async def reset_job(job_id: str, supervisor: JobSupervisor = Depends(get_supervisor)):
    try:
        return await supervisor.reset(job_id)
    except AccumulatorError as e:
        raise http_error(e)


@router.delete("/{job_id}", status_code=204)
async def delete_job(job_id: str, supervisor: JobSupervisor = Depends(get_supervisor)):
    try:
        await supervisor.delete(job_id)
    except AccumulatorError as e:
        raise http_error(e)
