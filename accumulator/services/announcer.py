"""Telegram announcements for executed trades and job errors."""

import logging

from telegram import Bot, LinkPreviewOptions
from telegram.constants import ParseMode
from telegram.error import TelegramError

from accumulator.config import settings
from accumulator.models.trade import TradeReason
from accumulator.utils.clock import format_price
from accumulator.utils.constants import DEFAULT_EXPLORER_TX_URL, EXPLORER_TX_URLS

logger = logging.getLogger(__name__)

_REASON_LABELS = {
    TradeReason.DCA: ("🦞", "DCA Buy"),
    TradeReason.DIP_BUY: ("📉", "Dip Buy"),
    TradeReason.TAKE_PROFIT: ("💰", "Take-Profit Sell"),
    TradeReason.LIQUIDATE: ("🧯", "Liquidation Sell"),
}


class Announcer:
    """Sends HTML messages to the configured chats. Never raises."""

    def __init__(self, token: str, chat_ids: list[int]):
        self.bot = Bot(token)
        self.chat_ids = list(chat_ids)

    async def send(self, message: str) -> bool:
        delivered = True
        for chat_id in self.chat_ids:
            try:
                await self.bot.send_message(
                    chat_id=chat_id,
                    text=message,
                    parse_mode=ParseMode.HTML,
                    link_preview_options=LinkPreviewOptions(is_disabled=True),
                )
            except TelegramError as e:
                logger.warning(f"Telegram send to {chat_id} failed: {e}")
                delivered = False
        return delivered

    async def announce_trade(
        self,
        token: str,
        chain: str,
        reason: TradeReason,
        amount_usd: float,
        token_amount: float,
        price: float,
        total_accumulated: float,
        max_budget: float,
        tx_hash: str | None = None,
    ):
        await self.send(
            format_trade_message(
                token, chain, reason, amount_usd, token_amount, price,
                total_accumulated, max_budget, tx_hash,
            )
        )

    async def announce_error(self, token: str, error: str):
        await self.send(f"⚠️ <b>{token} halted</b>\n\n{error}")


def format_trade_message(
    token: str,
    chain: str,
    reason: TradeReason,
    amount_usd: float,
    token_amount: float,
    price: float,
    total_accumulated: float,
    max_budget: float,
    tx_hash: str | None = None,
) -> str:
    emoji, label = _REASON_LABELS.get(reason, ("•", reason.value))
    tokens_str = f"{token_amount:,.0f}" if token_amount > 1000 else f"{token_amount:.2f}"
    progress = (total_accumulated / max_budget * 100) if max_budget > 0 else 0.0
    verb = "Received" if reason in (TradeReason.DCA, TradeReason.DIP_BUY) else "Sold"

    message = (
        f"{emoji} <b>{label}</b>\n\n"
        f"<b>Token:</b> {token}\n"
        f"<b>Amount:</b> ${amount_usd:.2f}\n"
        f"<b>{verb}:</b> {tokens_str} {token}\n"
        f"<b>Price:</b> ${format_price(price)}\n\n"
        f"<b>Progress:</b> ${total_accumulated:.2f} / ${max_budget:.0f} ({progress:.1f}%)"
    )
    if tx_hash:
        message += f"\n\n{EXPLORER_TX_URLS.get(chain, DEFAULT_EXPLORER_TX_URL)}{tx_hash}"
    return message


_announcer: Announcer | None = None


def get_announcer() -> Announcer | None:
    """Module-level announcer, or None when announcements are not configured."""
    global _announcer
    if _announcer is None and settings.announcements_enabled:
        if not settings.telegram_bot_token or not settings.telegram_chat_ids:
            logger.warning("Announcements enabled but Telegram token or chat ids missing")
            return None
        _announcer = Announcer(settings.telegram_bot_token, settings.telegram_chat_ids)
        logger.info(f"Announcements enabled for {len(settings.telegram_chat_ids)} chat(s)")
    return _announcer
