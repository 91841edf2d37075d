"""Shared API dependencies."""

from fastapi import HTTPException, Request, status

from accumulator.engine.errors import (
    AccumulatorError,
    ConfigError,
    ConflictError,
    JobNotFoundError,
    PortError,
    TickError,
)
from accumulator.engine.ledger import LedgerStore
from accumulator.engine.supervisor import JobSupervisor

_STATUS_CODES = [
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ConfigError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (TickError, status.HTTP_502_BAD_GATEWAY),
    (PortError, status.HTTP_502_BAD_GATEWAY),
]


def get_supervisor(request: Request) -> JobSupervisor:
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Supervisor not running")
    return supervisor


def get_ledger(request: Request) -> LedgerStore:
    return get_supervisor(request).ledger


def http_error(error: AccumulatorError) -> HTTPException:
    """Translate an accumulator error into the matching HTTP response."""
    for error_type, code in _STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
