"""CLI tool for operating accumulation jobs.

Usage:
    python -m accumulator.cli start [--config=PATH] [--dry-run] [--simulation]
    python -m accumulator.cli status [JOB]
    python -m accumulator.cli list
    python -m accumulator.cli pause [JOB]
    python -m accumulator.cli resume [JOB]
    python -m accumulator.cli liquidate [JOB]
    python -m accumulator.cli reset [JOB]

JOB is a job id or token address; when omitted, the token in config.json is used.
"""

import asyncio
import signal
import sys

from accumulator.database import create_db_and_tables
from accumulator.engine.errors import AccumulatorError, PriceUnavailable
from accumulator.engine.ledger import LedgerStore
from accumulator.engine.supervisor import JobSupervisor
from accumulator.models.job import Job, JobStatus
from accumulator.schemas.job_config import load_job_config
from accumulator.services.ports import TokenRef
from accumulator.utils.clock import format_price
from accumulator.utils.logging import setup_logging

COMMANDS = ("start", "status", "list", "pause", "resume", "liquidate", "reset")


def _option(args: list[str], name: str) -> str | None:
    prefix = f"--{name}="
    for arg in args:
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return None


def _build_supervisor(simulation: bool = False) -> JobSupervisor:
    from accumulator.services.announcer import get_announcer
    from accumulator.services.executor_client import build_trading_ports

    ports = build_trading_ports("simulation" if simulation else None)
    return JobSupervisor(LedgerStore(), ports, announcer=get_announcer())


def _resolve_job(ledger: LedgerStore, args: list[str]) -> Job:
    ident = next((a for a in args if not a.startswith("--")), None)
    if ident is None:
        ident = load_job_config(_option(args, "config")).token_address
    job = ledger.get_job_by_id(ident) or ledger.get_job(ident)
    if job is None:
        raise AccumulatorError(f"No job found for '{ident}'")
    return job


def _print_job(job: Job):
    config = job.config.get("accumulate") or {}
    budget = config.get("max_accumulation_usd", 0.0)
    print(f"{job.token_symbol} ({job.token_address}) on {job.chain}")
    print(f"  Job ID:       {job.id}")
    print(f"  Status:       {job.status.value}")
    print(f"  Balance:      {job.token_balance:.6f}")
    print(f"  Accumulated:  ${job.total_accumulated:.2f} / ${budget:.0f}")
    print(f"  Avg price:    ${format_price(job.avg_buy_price)}")
    print(f"  Recent high:  ${format_price(job.recent_high)}")
    print(f"  Last DCA:     {job.last_dca_buy_time or '-'}")
    if job.last_error:
        print(f"  Last error:   {job.last_error} ({job.error_count} total)")


async def _run_until_signalled(supervisor: JobSupervisor):
    """Tick in the foreground until SIGINT/SIGTERM, then pause cleanly."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    supervisor.scheduler.start()
    print("Running. Press Ctrl+C to pause and exit.")
    await stop.wait()
    print("\nShutting down...")
    await supervisor.shutdown()


async def start(args: list[str]):
    config = load_job_config(_option(args, "config"))
    if "--dry-run" in args:
        config = config.model_copy(update={"dry_run": True})

    supervisor = _build_supervisor(simulation="--simulation" in args)
    job = await supervisor.start_job(config)
    _print_job(job)
    if config.dry_run:
        print("  DRY RUN: no trades will be executed")
    await _run_until_signalled(supervisor)


async def resume(args: list[str]):
    supervisor = _build_supervisor(simulation="--simulation" in args)
    job = _resolve_job(supervisor.ledger, args)
    job = await supervisor.resume(job.id)
    _print_job(job)
    await _run_until_signalled(supervisor)


async def pause(args: list[str]):
    # No trading here; simulated ports avoid needing a live executor
    supervisor = _build_supervisor(simulation=True)
    job = _resolve_job(supervisor.ledger, args)
    job = await supervisor.pause(job.id)
    print(f"Job {job.token_symbol} paused. Position is kept; run `resume` to continue.")


async def liquidate(args: list[str]):
    supervisor = _build_supervisor(simulation="--simulation" in args)
    job = _resolve_job(supervisor.ledger, args)
    print(f"Liquidating {job.token_balance:.6f} {job.token_symbol}...")
    job = await supervisor.liquidate(job.id)
    if job.status == JobStatus.LIQUIDATING:
        print(f"Job {job.token_symbol} partially sold; {job.token_balance:.6f} left. Run `liquidate` again.")
    else:
        print(f"Job {job.token_symbol} liquidated and back to {job.status.value}.")


async def reset(args: list[str]):
    supervisor = _build_supervisor(simulation=True)
    job = _resolve_job(supervisor.ledger, args)
    await supervisor.reset(job.id)
    print(f"Job {job.token_symbol} reset. Accumulation state cleared.")


async def _print_market(job: Job):
    """Live price and liquidity of the token's most liquid pair."""
    from accumulator.services.price_feed import DexScreenerClient

    feed = DexScreenerClient()
    try:
        info = await feed.pair_info(TokenRef(symbol=job.token_symbol, address=job.token_address, chain=job.chain))
    except PriceUnavailable as e:
        print(f"  Market:       unavailable ({e})")
        return
    finally:
        await feed.close()

    price = info["price"]
    print(f"  Price:        ${format_price(price)} ({info['base_symbol']}/{info['quote_symbol']})")
    print(f"  Liquidity:    ${info['liquidity_usd']:,.0f} | 24h volume: ${info['volume_24h']:,.0f}")
    if job.token_balance > 0 and price > 0:
        value = job.token_balance * price
        pnl = value - job.total_accumulated
        print(f"  Position:     ${value:.2f} (PnL ${pnl:+.2f})")


async def status(args: list[str]):
    ledger = LedgerStore()
    job = _resolve_job(ledger, args)
    _print_job(job)
    await _print_market(job)

    trades = ledger.get_trade_history(job.id, limit=10)
    if trades:
        print("\nRecent trades:")
    for t in trades:
        print(
            f"  {t.created_at:%Y-%m-%d %H:%M} {t.side.value:<4} {t.reason.value:<12} "
            f"${t.quote_amount:>9.2f} {t.base_amount:.6f} @ ${format_price(t.price_usd)} [{t.status.value}]"
        )


async def list_jobs(args: list[str]):
    jobs = LedgerStore().list_jobs()
    if not jobs:
        print("No jobs.")
    for job in jobs:
        print(
            f"{job.id}  {job.token_symbol:<10} {job.status.value:<12} "
            f"balance={job.token_balance:.6f} accumulated=${job.total_accumulated:.2f}"
        )


HANDLERS = {
    "start": start,
    "status": status,
    "list": list_jobs,
    "pause": pause,
    "resume": resume,
    "liquidate": liquidate,
    "reset": reset,
}


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m accumulator.cli <command> [args]")
        print(f"Commands: {', '.join(COMMANDS)}")
        sys.exit(1)

    command = sys.argv[1]
    handler = HANDLERS.get(command)
    if handler is None:
        print(f"Unknown command: {command}")
        sys.exit(1)

    setup_logging()
    create_db_and_tables()
    try:
        asyncio.run(handler(sys.argv[2:]))
    except (AccumulatorError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
