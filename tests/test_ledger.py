"""Tests for the ledger store: job CRUD, guarded transitions, atomic trade recording."""

from types import SimpleNamespace

import pytest

from accumulator.engine.errors import ConflictError, JobNotFoundError, PersistenceError
from accumulator.engine.ledger import TradeFields, replay_totals
from accumulator.models.job import JobStatus
from accumulator.models.trade import TradeReason, TradeSide, TradeStatus

from conftest import T0, TOKEN_ADDRESS


def _buy(quote: float, base: float, tx_hash: str | None = "0xabc") -> TradeFields:
    return TradeFields(
        side=TradeSide.BUY,
        reason=TradeReason.DCA,
        base_amount=base,
        quote_amount=quote,
        price_usd=quote / base,
        tx_hash=tx_hash,
    )


# ---------------------------------------------------------------------------
# 1. Jobs
# ---------------------------------------------------------------------------

class TestJobs:
    def test_create_starts_idle_with_zero_state(self, make_job):
        job = make_job()
        assert job.status == JobStatus.IDLE
        assert job.total_accumulated == 0
        assert job.token_balance == 0
        assert job.avg_buy_price == 0
        assert job.token_address == TOKEN_ADDRESS

    def test_lookup_by_token_address_is_case_insensitive(self, ledger, make_job):
        job = make_job()
        assert ledger.get_job(TOKEN_ADDRESS.upper().replace("0X", "0x")).id == job.id
        assert ledger.get_job("0xdeadbeef") is None

    def test_one_job_per_token(self, make_job):
        make_job()
        with pytest.raises(PersistenceError):
            make_job()

    def test_list_jobs_filters_by_status(self, ledger, make_job):
        job = make_job()
        other = ledger.create_job(token_address="0xBB", token_symbol="OTHER", config={})
        ledger.transition(job.id, JobStatus.RUNNING, {JobStatus.IDLE})

        assert {j.id for j in ledger.list_jobs()} == {job.id, other.id}
        assert [j.id for j in ledger.list_jobs(JobStatus.RUNNING)] == [job.id]

    def test_require_job_raises_for_unknown_id(self, ledger):
        with pytest.raises(JobNotFoundError):
            ledger.require_job("missing")

    def test_update_working_state_rejects_unknown_fields(self, ledger, make_job):
        job = make_job()
        with pytest.raises(ValueError):
            ledger.update_working_state(job.id, {"status": JobStatus.RUNNING})
        with pytest.raises(ValueError):
            ledger.update_working_state(job.id, {"token_balance": -1.0})

    def test_update_job_config(self, ledger, make_job):
        job = make_job()
        ledger.update_job_config(job.id, {"dry_run": True})
        assert ledger.require_job(job.id).config == {"dry_run": True}


# ---------------------------------------------------------------------------
# 2. Status transitions
# ---------------------------------------------------------------------------

class TestTransitions:
    def test_running_sets_started_and_clears_error(self, ledger, make_job):
        job = make_job()
        ledger.transition(job.id, JobStatus.RUNNING, {JobStatus.IDLE})
        ledger.transition(job.id, JobStatus.ERROR, {JobStatus.RUNNING}, error="boom")
        previous, job = ledger.transition(job.id, JobStatus.RUNNING, {JobStatus.ERROR})

        assert previous == JobStatus.ERROR
        assert job.started_at is not None
        assert job.last_error is None
        assert job.error_count == 1

    def test_pause_sets_paused_at(self, ledger, make_job):
        job = make_job()
        ledger.transition(job.id, JobStatus.RUNNING, {JobStatus.IDLE})
        _, job = ledger.transition(job.id, JobStatus.PAUSED, {JobStatus.RUNNING})
        assert job.paused_at is not None
        assert ledger.require_job(job.id).status == JobStatus.PAUSED

    def test_disallowed_transition_raises_conflict(self, ledger, make_job):
        job = make_job()
        with pytest.raises(ConflictError):
            ledger.transition(job.id, JobStatus.PAUSED, {JobStatus.RUNNING})
        assert ledger.require_job(job.id).status == JobStatus.IDLE

    def test_running_while_liquidating_names_liquidation(self, ledger, make_job):
        job = make_job()
        ledger.transition(job.id, JobStatus.LIQUIDATING, {JobStatus.IDLE})
        with pytest.raises(ConflictError, match="liquidation in progress"):
            ledger.transition(job.id, JobStatus.RUNNING, {JobStatus.IDLE, JobStatus.PAUSED})

    def test_unknown_job(self, ledger):
        with pytest.raises(JobNotFoundError):
            ledger.transition("missing", JobStatus.RUNNING, {JobStatus.IDLE})


# ---------------------------------------------------------------------------
# 3. Trades
# ---------------------------------------------------------------------------

class TestTrades:
    def test_trade_and_totals_committed_together(self, ledger, make_job):
        job = make_job()
        trade, updated = ledger.record_trade_and_update_state(
            job.id, _buy(10, 0.1), {"total_accumulated": 10.0, "token_balance": 0.1, "last_dca_buy_time": T0}
        )

        assert trade.job_id == job.id
        assert trade.status == TradeStatus.EXECUTED
        assert trade.executed_at is not None
        assert updated.total_accumulated == 10
        stored = ledger.require_job(job.id)
        assert stored.token_balance == pytest.approx(0.1)
        assert [t.id for t in ledger.get_trade_history(job.id)] == [trade.id]

    def test_trade_without_tx_hash_is_pending(self, ledger, make_job):
        job = make_job()
        trade, _ = ledger.record_trade_and_update_state(job.id, _buy(10, 0.1, tx_hash=None), {})
        assert trade.status == TradeStatus.PENDING
        assert trade.executed_at is None

    def test_invalid_delta_writes_nothing(self, ledger, make_job):
        job = make_job()
        with pytest.raises(ValueError):
            ledger.record_trade_and_update_state(job.id, _buy(10, 0.1), {"token_balance": -0.1})
        assert ledger.get_trade_history(job.id) == []

    def test_unknown_job_writes_nothing(self, ledger):
        with pytest.raises(JobNotFoundError):
            ledger.record_trade_and_update_state("missing", _buy(10, 0.1), {})
        assert ledger.list_trades() == []

    def test_history_newest_first_with_limit(self, ledger, make_job):
        job = make_job()
        ids = [ledger.record_trade_and_update_state(job.id, _buy(10 + i, 0.1), {})[0].id for i in range(3)]

        history = ledger.get_trade_history(job.id, limit=2)

        assert [t.id for t in history] == [ids[2], ids[1]]

    def test_update_trade_status_backfills(self, ledger, make_job):
        job = make_job()
        trade, _ = ledger.record_trade_and_update_state(job.id, _buy(10, 0.1, tx_hash=None), {})

        updated = ledger.update_trade_status(trade.id, TradeStatus.EXECUTED, tx_hash="0x123")

        assert updated.status == TradeStatus.EXECUTED
        assert updated.tx_hash == "0x123"
        assert updated.executed_at is not None
        assert updated.quote_amount == 10

    def test_update_trade_status_failed_keeps_error(self, ledger, make_job):
        job = make_job()
        trade, _ = ledger.record_trade_and_update_state(job.id, _buy(10, 0.1, tx_hash=None), {})

        updated = ledger.update_trade_status(trade.id, TradeStatus.FAILED, error="reverted")

        assert updated.error == "reverted"
        assert updated.executed_at is None

    def test_delete_job_cascades_trades(self, ledger, make_job):
        job = make_job()
        ledger.record_trade_and_update_state(job.id, _buy(10, 0.1), {})

        ledger.delete_job(job.id)

        assert ledger.get_job_by_id(job.id) is None
        assert ledger.list_trades() == []

    def test_reset_zeroes_state_and_keeps_history(self, ledger, make_job):
        job = make_job()
        ledger.record_trade_and_update_state(
            job.id, _buy(10, 0.1), {"total_accumulated": 10.0, "token_balance": 0.1, "recent_high": 100.0}
        )
        ledger.transition(job.id, JobStatus.RUNNING, {JobStatus.IDLE})

        job = ledger.reset_job(job.id)

        assert job.status == JobStatus.IDLE
        assert job.total_accumulated == 0
        assert job.token_balance == 0
        assert job.recent_high == 0
        assert job.started_at is None
        assert len(ledger.get_trade_history(job.id)) == 1


# ---------------------------------------------------------------------------
# 4. Replay
# ---------------------------------------------------------------------------

def _row(side, quote, base, status=TradeStatus.EXECUTED):
    return SimpleNamespace(side=side, quote_amount=quote, base_amount=base, status=status)


class TestReplay:
    def test_buys_sum(self):
        total, balance = replay_totals([_row(TradeSide.BUY, 10, 0.1), _row(TradeSide.BUY, 20, 0.4)])
        assert total == pytest.approx(30)
        assert balance == pytest.approx(0.5)

    def test_sell_removes_cost_at_average(self):
        trades = [
            _row(TradeSide.BUY, 100, 10),
            _row(TradeSide.SELL, 20, 1),  # sold at 20, avg cost 10
        ]
        total, balance = replay_totals(trades)
        assert total == pytest.approx(90)
        assert balance == pytest.approx(9)

    def test_full_sell_resets(self):
        trades = [_row(TradeSide.BUY, 100, 10), _row(TradeSide.SELL, 500, 10)]
        assert replay_totals(trades) == (0.0, 0.0)

    def test_failed_trades_ignored(self):
        trades = [_row(TradeSide.BUY, 100, 10), _row(TradeSide.BUY, 50, 5, status=TradeStatus.FAILED)]
        assert replay_totals(trades) == (100, 10)

    def test_audit_reports_drift(self, ledger, make_job):
        job = make_job()
        ledger.record_trade_and_update_state(job.id, _buy(10, 0.1), {"total_accumulated": 12.0, "token_balance": 0.1})

        audit = ledger.audit_totals(job.id)

        assert audit["total_drift"] == pytest.approx(2.0)
        assert audit["balance_drift"] == pytest.approx(0.0)
