"""Pydantic schemas for a job's strategy configuration.

Field names are snake_case; camelCase keys (as written in config.json files)
are accepted too.
"""

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from accumulator.engine.errors import ConfigError
from accumulator.utils.constants import (
    MAX_TICK_INTERVAL_SECONDS,
    MIN_TICK_INTERVAL_SECONDS,
    USD_STABLECOINS,
    VALID_CHAINS,
)

CONFIG_FILENAME = "config.json"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PairConfig(_ConfigModel):
    base: str = Field(min_length=1, max_length=32)
    base_address: str | None = None
    quote: str = Field(default="USDC", min_length=1, max_length=32)
    quote_address: str | None = None
    chain: str = "base"

    @field_validator("base", "quote")
    @classmethod
    def _trim_symbol(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("base_address", "quote_address")
    @classmethod
    def _normalize_address(cls, value: str | None) -> str | None:
        if value is None:
            return None
        text = value.strip().lower()
        return text or None

    @field_validator("chain")
    @classmethod
    def _validate_chain(cls, value: str) -> str:
        if value not in VALID_CHAINS:
            allowed = ", ".join(VALID_CHAINS)
            raise ValueError(f"must be one of: {allowed}")
        return value

    @model_validator(mode="after")
    def _require_quote_address_for_volatile_quote(self):
        if self.quote.upper() not in USD_STABLECOINS and not self.quote_address:
            raise ValueError(
                f"quote_address is required when quote token {self.quote} is not a USD stablecoin"
            )
        return self

    @property
    def is_stable_quote(self) -> bool:
        return self.quote.upper() in USD_STABLECOINS


class StrategyConfig(_ConfigModel):
    tick_interval_seconds: int = Field(
        default=120, ge=MIN_TICK_INTERVAL_SECONDS, le=MAX_TICK_INTERVAL_SECONDS
    )


class LimitsConfig(_ConfigModel):
    # Read by the liquidity-mode engine only; accumulation is capped by max_accumulation_usd
    max_position_usd: float = Field(default=1000.0, ge=10)
    min_trade_usd: float = Field(default=10.0, ge=1)
    max_trades_per_hour: int = Field(default=20, ge=1, le=1000)


class AccumulateConfig(_ConfigModel):
    dca_amount: float = Field(default=10.0, ge=1)
    dca_interval_hours: float = Field(default=4.0, ge=0.01, le=168)
    dip_buy_threshold: float = Field(default=5.0, ge=1, le=50)
    dip_buy_multiplier: float = Field(default=2.0, ge=1, le=5)
    take_profit_percent: float = Field(default=0.0, ge=0, le=100)  # 0 = disabled
    take_profit_sell_percent: float = Field(default=10.0, ge=1, le=50)
    max_accumulation_usd: float = Field(default=1000.0, ge=1)


class JobConfig(_ConfigModel):
    mode: Literal["accumulate", "liquidity"] = "accumulate"
    pair: PairConfig
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    accumulate: AccumulateConfig | None = None
    dry_run: bool = False

    @model_validator(mode="after")
    def _require_mode_section(self):
        if self.mode == "accumulate" and self.accumulate is None:
            raise ValueError("accumulate mode requires an 'accumulate' section")
        return self

    @property
    def token_address(self) -> str:
        if not self.pair.base_address:
            raise ConfigError("pair.base_address is required to track a job")
        return self.pair.base_address


def find_config_path() -> Path | None:
    """Look for config.json in the working directory, then the project root."""
    from accumulator.config import PROJECT_ROOT

    for candidate in (Path.cwd() / CONFIG_FILENAME, PROJECT_ROOT / CONFIG_FILENAME):
        if candidate.exists():
            return candidate
    return None


def load_job_config(path: str | Path | None = None) -> JobConfig:
    """Read and validate a job configuration file."""
    config_path = Path(path) if path else find_config_path()
    if config_path is None:
        raise ConfigError(f"No {CONFIG_FILENAME} found")

    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config from {config_path}: {e}") from e

    try:
        return JobConfig.model_validate(raw)
    except ValidationError as e:
        lines = [
            f"  - {'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ConfigError("Invalid configuration:\n" + "\n".join(lines)) from e
