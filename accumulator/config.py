"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'accumulator.db'}"
    log_level: str = "INFO"
    log_file: str = ""  # e.g. logs/accumulator.log; empty = console only
    cors_origins: list[str] = ["http://localhost:5173"]

    # Engine
    tick_interval_seconds: int = 120
    max_consecutive_failures: int = 3  # failed ticks in a row before the job enters ERROR

    # Execution venue
    execution_mode: str = "simulation"  # "simulation" or "live"
    executor_url: str = ""
    executor_api_key: str = ""
    executor_timeout_seconds: float = 180.0  # swaps can take minutes to settle

    # Price feed
    price_feed_url: str = "https://api.dexscreener.com/latest/dex"

    # Telegram announcements
    announcements_enabled: bool = False
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    model_config = {"env_prefix": "ACC_", "env_file": ".env"}


settings = Settings()
