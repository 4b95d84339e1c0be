"""Tests for gridbot.config — environment loading and settings validation."""

import json
import os

import pytest

from gridbot.config import (
    DcaMultipliers,
    PaperConfig,
    StrategyConfig,
    SymbolConfig,
    load_config,
    load_settings,
    parse_settings,
    parse_symbol,
)
from gridbot.errors import ConfigError

_ENV_VARS = [
    "GRIDBOT_MODE",
    "GRIDBOT_SETTINGS",
    "INITIAL_BALANCE",
    "QUOTE_CURRENCY",
    "DB_PATH",
    "LOG_LEVEL",
    "API_PORT",
    "BINANCE_BASE_URL",
    "KLINE_INTERVAL",
    "REPORT_INTERVAL_MINUTES",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Ensure GridBot env vars are cleared between tests."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


def _no_dotenv(tmp_path):
    # A missing file keeps load_dotenv from picking up a real .env.
    return str(tmp_path / "missing.env")


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        cfg = load_config(_no_dotenv(tmp_path))
        assert cfg.mode == "paper"
        assert cfg.settings_path == "gridbot.json"
        assert cfg.initial_balance == 10_000.0
        assert cfg.quote_currency == "USDT"
        assert cfg.db_path == "data/gridbot.db"
        assert cfg.api_port == 8080
        assert cfg.kline_interval == "1m"

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GRIDBOT_MODE", "backtest")
        monkeypatch.setenv("INITIAL_BALANCE", "2500")
        monkeypatch.setenv("API_PORT", "9000")
        cfg = load_config(_no_dotenv(tmp_path))
        assert cfg.mode == "backtest"
        assert cfg.initial_balance == 2500.0
        assert cfg.api_port == 9000

    def test_reads_dotenv_file(self, monkeypatch, tmp_path):
        # load_dotenv writes into os.environ; keep that local to this test.
        monkeypatch.setattr(os, "environ", dict(os.environ))
        env_file = tmp_path / ".env"
        env_file.write_text("QUOTE_CURRENCY=BUSD\nKLINE_INTERVAL=5m\n")
        cfg = load_config(str(env_file))
        assert cfg.quote_currency == "BUSD"
        assert cfg.kline_interval == "5m"

    def test_invalid_mode(self, monkeypatch, tmp_path):
        monkeypatch.setenv("GRIDBOT_MODE", "yolo")
        with pytest.raises(ConfigError, match="GRIDBOT_MODE"):
            load_config(_no_dotenv(tmp_path))

    def test_non_numeric_balance(self, monkeypatch, tmp_path):
        monkeypatch.setenv("INITIAL_BALANCE", "lots")
        with pytest.raises(ConfigError):
            load_config(_no_dotenv(tmp_path))

    def test_non_positive_balance(self, monkeypatch, tmp_path):
        monkeypatch.setenv("INITIAL_BALANCE", "0")
        with pytest.raises(ConfigError, match="INITIAL_BALANCE"):
            load_config(_no_dotenv(tmp_path))


class TestStrategyConfig:
    def test_defaults_are_valid(self):
        cfg = StrategyConfig()
        assert cfg.grid_levels_count == 20
        assert cfg.grid_interval_method == "DailyBarDiff"
        assert cfg.min_volatile_bar_ratio == 0.51
        assert cfg.dca_multipliers == DcaMultipliers(1.0, 3.0, 4.0)

    @pytest.mark.parametrize("field, value", [
        ("grid_levels_count", 4),
        ("grid_levels_count", 51),
        ("atr_period", 4),
        ("ema_deviation_threshold", 0.6),
        ("min_volatility_percentage", 0.2),
        ("min_volatile_bar_ratio", 0.05),
        ("bar_count_for_volatility", 5),
        ("profit_target_multiplier", 11),
        ("grid_recalculation_interval_hours", 200),
        ("base_grid_size", 0),
        ("grid_interval_method", "Fibonacci"),
    ])
    def test_out_of_range(self, field, value):
        with pytest.raises(ConfigError):
            StrategyConfig(**{field: value})

    def test_dca_multipliers_positive(self):
        with pytest.raises(ConfigError):
            DcaMultipliers(standard=0)

    def test_paper_config_validation(self):
        with pytest.raises(ConfigError):
            PaperConfig(initial_balance=0)
        with pytest.raises(ConfigError):
            PaperConfig(history_limit=1)
        with pytest.raises(ConfigError):
            PaperConfig(order_history_limit=-1)
        with pytest.raises(ConfigError, match="commission_rate"):
            PaperConfig(commission_rate=0.05)

    def test_paper_commission_inherits_by_default(self):
        assert PaperConfig().commission_rate is None


class TestSymbols:
    @pytest.mark.parametrize("symbol, expected", [
        ("BTCUSDT", ("BTC", "USDT")),
        ("ETH/BTC", ("ETH", "BTC")),
        ("SOLFDUSD", ("SOL", "FDUSD")),
    ])
    def test_parse_symbol(self, symbol, expected):
        assert parse_symbol(symbol) == expected

    def test_parse_symbol_unknown_quote(self):
        with pytest.raises(ConfigError):
            parse_symbol("FOOBAR")

    def test_explicit_assets_override_parsing(self):
        cfg = SymbolConfig(pair="XYZABC", min_daily_bar_diff_threshold=1.0, base_asset="XYZ", quote_asset="ABC")
        assert cfg.assets == ("XYZ", "ABC")

    def test_threshold_must_be_positive(self):
        with pytest.raises(ConfigError):
            SymbolConfig(pair="BTCUSDT", min_daily_bar_diff_threshold=0)


class TestSettings:
    def _settings(self):
        return {
            "symbols": [
                {"pair": "BTCUSDT", "min_daily_bar_diff_threshold": 50.0, "price_precision": 2},
                {"pair": "ETHUSDT", "min_daily_bar_diff_threshold": 2.0, "grid_size": 250.0},
            ],
            "strategy": {
                "grid_levels_count": 30,
                "dca_multipliers": {"standard": 1.0, "moderate": 2.0, "aggressive": 3.0},
            },
        }

    def test_parse(self):
        settings = parse_settings(self._settings())
        assert [s.pair for s in settings.symbols] == ["BTCUSDT", "ETHUSDT"]
        assert settings.symbols[1].grid_size == 250.0
        assert settings.strategy.grid_levels_count == 30
        assert settings.strategy.dca_multipliers.moderate == 2.0

    def test_requires_a_symbol(self):
        with pytest.raises(ConfigError, match="At least one symbol"):
            parse_settings({"symbols": []})

    def test_duplicate_pairs(self):
        data = self._settings()
        data["symbols"].append(dict(data["symbols"][0]))
        with pytest.raises(ConfigError, match="Duplicate"):
            parse_settings(data)

    def test_unknown_key(self):
        data = self._settings()
        data["strategy"]["grid_count"] = 10
        with pytest.raises(ConfigError, match="grid_count"):
            parse_settings(data)

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "gridbot.json"
        path.write_text(json.dumps(self._settings()))
        assert len(load_settings(path).symbols) == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "gridbot.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="valid JSON"):
            load_settings(path)
