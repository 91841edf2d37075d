"""Tests for the CLI status command."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from accumulator import cli
from accumulator.engine.errors import PriceUnavailable
from accumulator.engine.ledger import TradeFields
from accumulator.models.trade import TradeReason, TradeSide

from conftest import TOKEN_ADDRESS


def _feed(info=None, error=None) -> MagicMock:
    feed = MagicMock()
    feed.pair_info = AsyncMock(return_value=info, side_effect=error)
    feed.close = AsyncMock()
    return feed


PAIR_INFO = {
    "price": 120.0,
    "price_native": 0.04,
    "volume_24h": 1_500_000.0,
    "liquidity_usd": 250_000.0,
    "fdv": 9_000_000.0,
    "price_change_24h": 3.5,
    "base_symbol": "TKN",
    "quote_symbol": "WETH",
    "pair_address": "0xpair",
}


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------

class TestStatus:
    @pytest.mark.asyncio
    async def test_shows_live_market_and_position(self, ledger, make_job, capsys):
        job = make_job(token_balance=1.0, total_accumulated=100.0)
        ledger.record_trade_and_update_state(
            job.id,
            TradeFields(
                side=TradeSide.BUY,
                reason=TradeReason.DCA,
                base_amount=1.0,
                quote_amount=100.0,
                price_usd=100.0,
                tx_hash="0xabc",
            ),
            {},
        )
        feed = _feed(PAIR_INFO)

        with patch("accumulator.cli.LedgerStore", return_value=ledger), \
                patch("accumulator.services.price_feed.DexScreenerClient", return_value=feed):
            await cli.status([TOKEN_ADDRESS])

        out = capsys.readouterr().out
        assert "TKN/WETH" in out
        assert "Liquidity:    $250,000" in out
        assert "24h volume: $1,500,000" in out
        assert "Position:     $120.00 (PnL $+20.00)" in out
        assert "Recent trades:" in out
        token = feed.pair_info.await_args.args[0]
        assert token.address == TOKEN_ADDRESS
        feed.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_market_outage_still_prints_job(self, ledger, make_job, capsys):
        job = make_job()
        feed = _feed(error=PriceUnavailable("DexScreener request failed"))

        with patch("accumulator.cli.LedgerStore", return_value=ledger), \
                patch("accumulator.services.price_feed.DexScreenerClient", return_value=feed):
            await cli.status([job.id])

        out = capsys.readouterr().out
        assert f"Job ID:       {job.id}" in out
        assert "Market:       unavailable (DexScreener request failed)" in out
        assert "Position:" not in out
        feed.close.assert_awaited_once()
