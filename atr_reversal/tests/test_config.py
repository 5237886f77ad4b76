from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from atr_reversal.shared.config import (
    AgentSettings,
    LoggingSettings,
    PathSettings,
    SchedulingSettings,
    StrategySettings,
    TelegramSettings,
    get_settings,
    reload_settings,
)


def test_strategy_defaults() -> None:
    settings = StrategySettings()

    assert settings.quote_asset == "USDT"
    assert settings.position_size_pct == Decimal("0.01")
    assert settings.leverage == 10
    assert settings.scan_range_atr_ratio == Decimal("0.25")
    assert settings.monitor_minutes == 90
    assert settings.position_check_interval_sec == 30


def test_strategy_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("LEVERAGE", "5")
    monkeypatch.setenv("PROFIT_TRIGGER_PCT", "0.08")

    settings = StrategySettings()

    assert settings.leverage == 5
    assert settings.profit_trigger_pct == Decimal("0.08")


@pytest.mark.parametrize("value", ["0", "1.5", "-0.01"])
def test_fractions_must_be_in_unit_interval(value) -> None:
    with pytest.raises(ValidationError):
        StrategySettings(stop_loss_balance_pct=Decimal(value))


def test_leverage_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        StrategySettings(leverage=0)


@pytest.mark.parametrize("value", ["24:00", "7", "ab:cd", "12:60"])
def test_job_times_must_be_hh_mm(value) -> None:
    with pytest.raises(ValidationError):
        SchedulingSettings(atr_job_time=value)


def test_paths_derive_from_data_dir(tmp_path) -> None:
    paths = PathSettings(data_dir=tmp_path)

    assert paths.atr_cache == tmp_path / "atr-cache.json"
    assert paths.trade_cycle == tmp_path / "trade-cycle.json"
    assert paths.open_trades == tmp_path / "open-trades.json"
    assert paths.trade_log == tmp_path / "trades.log"
    assert PathSettings().data_dir == Path("data")


def test_telegram_disabled_without_credentials() -> None:
    assert TelegramSettings(bot_token="", chat_id="").enabled is False
    telegram = TelegramSettings(bot_token="abc", chat_id="1")
    assert telegram.enabled is True
    assert telegram.api_url == "https://api.telegram.org/botabc/sendMessage"


def test_log_format_is_validated() -> None:
    assert LoggingSettings(log_format="JSON").log_format == "json"
    with pytest.raises(ValidationError):
        LoggingSettings(log_format="xml")


def test_agent_settings_compose_sections(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "state"))

    settings = AgentSettings()

    assert settings.paths.data_dir == tmp_path / "state"
    assert settings.strategy.atr_period == 14
    assert settings.scheduling.candidate_job_time == "00:15"


def test_reload_settings_clears_cache(monkeypatch) -> None:
    monkeypatch.setenv("LEVERAGE", "3")
    first = reload_settings()
    monkeypatch.setenv("LEVERAGE", "4")

    assert get_settings() is first
    assert reload_settings().strategy.leverage == 4
    get_settings.cache_clear()
