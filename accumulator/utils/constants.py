"""Shared constants and defaults."""

VALID_CHAINS = ["base", "ethereum", "polygon", "solana", "unichain"]

# Quote tokens valued at $1 without a price lookup
USD_STABLECOINS = {"USDC", "USDT", "DAI", "USDBC"}

# A recent high older than this is replaced by the current price
RECENT_HIGH_DECAY_HOURS = 24.0

# Floor for the tick interval: one execution round-trip can take 30-60s
MIN_TICK_INTERVAL_SECONDS = 60
MAX_TICK_INTERVAL_SECONDS = 3600

TRADE_COUNTER_RESET_SECONDS = 3600

EXPLORER_TX_URLS: dict[str, str] = {
    "base": "https://basescan.org/tx/",
    "ethereum": "https://etherscan.io/tx/",
    "polygon": "https://polygonscan.com/tx/",
}
DEFAULT_EXPLORER_TX_URL = "https://etherscan.io/tx/"
