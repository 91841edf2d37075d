"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from accumulator.api import jobs, trades
from accumulator.config import settings
from accumulator.database import create_db_and_tables
from accumulator.utils.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    from accumulator.engine.ledger import LedgerStore
    from accumulator.engine.supervisor import JobSupervisor
    from accumulator.services.announcer import get_announcer
    from accumulator.services.executor_client import build_trading_ports

    supervisor = JobSupervisor(LedgerStore(), build_trading_ports(), announcer=get_announcer())
    # Jobs left RUNNING by a crashed process pick up where they stopped
    await supervisor.restore_running_jobs()
    supervisor.scheduler.start()
    app.state.supervisor = supervisor

    yield

    await supervisor.shutdown()
    app.state.supervisor = None


app = FastAPI(
    title="Accumulator",
    description="Token accumulation service: DCA, dip buying and take-profit per token",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(jobs.router)
app.include_router(trades.router)


@app.get("/api/health")
def health_check():
    return {"status": "ok"}


@app.get("/api/scheduler")
def scheduler_status():
    """Current scheduler state with job details."""
    supervisor = getattr(app.state, "supervisor", None)
    if supervisor is None:
        return {"running": False, "job_count": 0, "trades_this_hour": 0, "jobs": []}
    return supervisor.scheduler.get_status()
