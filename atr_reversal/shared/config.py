"""
Centralized Configuration for the ATR Reversal Agent
Uses Pydantic Settings with .env loading.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BinanceSettings(BaseSettings):
    """Binance USD-M futures API settings."""
    model_config = SettingsConfigDict(env_prefix="BINANCE_", extra="ignore")

    api_key: str = ""
    api_secret: str = ""
    testnet: bool = True


class TelegramSettings(BaseSettings):
    """Telegram notification settings."""
    model_config = SettingsConfigDict(env_prefix="TELEGRAM_", extra="ignore")

    bot_token: str = ""
    chat_id: str = ""

    @property
    def enabled(self) -> bool:
        """Both token and chat id are required to send anything."""
        return bool(self.bot_token and self.chat_id)

    @property
    def api_url(self) -> str:
        """Bot API sendMessage endpoint."""
        return f"https://api.telegram.org/bot{self.bot_token}/sendMessage"


class StrategySettings(BaseSettings):
    """Signal, sizing, execution and exit parameters."""
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    quote_asset: str = Field(default="USDT", alias="QUOTE_ASSET")
    position_size_pct: Decimal = Field(default=Decimal("0.01"), alias="POSITION_SIZE_PCT")
    leverage: int = Field(default=10, alias="LEVERAGE")

    # Volatility scan
    atr_period: int = Field(default=14, alias="ATR_PERIOD")
    atr_concurrency: int = Field(default=8, alias="ATR_CONCURRENCY")
    scan_concurrency: int = Field(default=5, alias="SCAN_CONCURRENCY")
    scan_interval: str = Field(default="15m", alias="SCAN_INTERVAL")
    scan_range_atr_ratio: Decimal = Field(default=Decimal("0.25"), alias="SCAN_RANGE_ATR_RATIO")

    # Pattern watch
    watch_interval: str = Field(default="5m", alias="WATCH_INTERVAL")
    monitor_minutes: int = Field(default=90, alias="MONITOR_MINUTES")

    # Exits
    time_based_exit_hours: Decimal = Field(default=Decimal("20"), alias="TIME_BASED_EXIT_HOURS")
    profit_trigger_pct: Decimal = Field(default=Decimal("0.05"), alias="PROFIT_TRIGGER_PCT")
    lock_percent_of_trigger: Decimal = Field(default=Decimal("0.6"), alias="LOCK_PERCENT_OF_TRIGGER")
    stop_loss_balance_pct: Decimal = Field(default=Decimal("0.01"), alias="STOP_LOSS_BALANCE_PCT")
    position_check_interval_sec: int = Field(default=30, alias="POSITION_CHECK_INTERVAL_SEC")

    # Order chasing
    order_chase_delay_sec: float = Field(default=10.0, alias="ORDER_CHASE_DELAY_SEC")
    order_chase_max_attempts: int = Field(default=6, alias="ORDER_CHASE_MAX_ATTEMPTS")
    place_protective_stop: bool = Field(default=True, alias="PLACE_PROTECTIVE_STOP")
    instrument_cache_ttl_sec: int = Field(default=3600, alias="INSTRUMENT_CACHE_TTL_SEC")

    @field_validator(
        "position_size_pct",
        "scan_range_atr_ratio",
        "profit_trigger_pct",
        "lock_percent_of_trigger",
        "stop_loss_balance_pct",
    )
    @classmethod
    def validate_fraction(cls, v: Decimal) -> Decimal:
        """Fractions are expressed as 0 < v <= 1 (0.01 == 1%)."""
        if v <= 0 or v > 1:
            raise ValueError(f"fraction must be in (0, 1], got {v}")
        return v

    @field_validator(
        "leverage",
        "atr_period",
        "atr_concurrency",
        "scan_concurrency",
        "monitor_minutes",
        "order_chase_max_attempts",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"value must be positive, got {v}")
        return v


class SchedulingSettings(BaseSettings):
    """Daily job times, in UTC."""
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    atr_job_time: str = Field(default="00:00", alias="ATR_JOB_TIME")
    candidate_job_time: str = Field(default="00:15", alias="CANDIDATE_JOB_TIME")
    run_candidate_on_start: bool = Field(default=False, alias="RUN_CANDIDATE_ON_START")

    @field_validator("atr_job_time", "candidate_job_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        """Validate HH:MM format."""
        hour, _, minute = v.partition(":")
        if not (hour.isdigit() and minute.isdigit()):
            raise ValueError(f"expected HH:MM, got {v!r}")
        if not (0 <= int(hour) < 24 and 0 <= int(minute) < 60):
            raise ValueError(f"time out of range: {v!r}")
        return v


class PathSettings(BaseSettings):
    """On-disk locations for JSON documents and the trade log."""
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    data_dir: Path = Field(default=Path("data"), alias="DATA_DIR")

    @property
    def atr_cache(self) -> Path:
        return self.data_dir / "atr-cache.json"

    @property
    def trade_log(self) -> Path:
        return self.data_dir / "trades.log"

    @property
    def open_trades(self) -> Path:
        return self.data_dir / "open-trades.json"

    @property
    def trade_cycle(self) -> Path:
        return self.data_dir / "trade-cycle.json"


class LoggingSettings(BaseSettings):
    """Logging settings."""
    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="text", alias="LOG_FORMAT")

    @field_validator("log_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        v = v.lower()
        if v not in {"text", "json"}:
            raise ValueError(f"LOG_FORMAT must be 'text' or 'json', got {v!r}")
        return v


class AgentSettings(BaseSettings):
    """Main agent settings."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings (loaded from same .env)
    binance: BinanceSettings = Field(default_factory=BinanceSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    strategy: StrategySettings = Field(default_factory=StrategySettings)
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache()
def get_settings() -> AgentSettings:
    """Get cached settings instance."""
    return AgentSettings()


def reload_settings() -> AgentSettings:
    """Force reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
