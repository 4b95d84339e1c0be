"""GridBot — application configuration.

Loads .env variables into a typed config object and the symbol / strategy
settings from a JSON file.  Validates ranges on load.
"""

import json
import os
import pathlib
from dataclasses import dataclass, field, fields
from typing import Optional

from dotenv import load_dotenv

from gridbot.errors import ConfigError
from gridbot.strategy.volatility import INTERVAL_METHODS

_TRADE_MODES = ("backtest", "paper", "live")

# Quote assets recognised when a pair carries no explicit base/quote split.
KNOWN_QUOTE_ASSETS = ("USDT", "BUSD", "USDC", "FDUSD", "TUSD", "BTC", "ETH", "BNB", "EUR", "TRY")


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    mode: str  # "paper", "live" or "backtest"
    settings_path: str
    initial_balance: float
    quote_currency: str
    db_path: str
    log_level: str
    api_port: int
    binance_base_url: str
    kline_interval: str
    report_interval_minutes: int


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ConfigError`` naming the variable when a value is invalid.
    """
    load_dotenv(dotenv_path=env_path)

    mode = os.environ.get("GRIDBOT_MODE", "paper")
    if mode not in _TRADE_MODES:
        raise ConfigError(
            f"GRIDBOT_MODE must be one of: {', '.join(_TRADE_MODES)} (got '{mode}')"
        )

    try:
        config = Config(
            mode=mode,
            settings_path=os.environ.get("GRIDBOT_SETTINGS", "gridbot.json"),
            initial_balance=float(os.environ.get("INITIAL_BALANCE", "10000")),
            quote_currency=os.environ.get("QUOTE_CURRENCY", "USDT"),
            db_path=os.environ.get("DB_PATH", "data/gridbot.db"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            api_port=int(os.environ.get("API_PORT", "8080")),
            binance_base_url=os.environ.get(
                "BINANCE_BASE_URL", "https://api.binance.com"
            ),
            kline_interval=os.environ.get("KLINE_INTERVAL", "1m"),
            report_interval_minutes=int(
                os.environ.get("REPORT_INTERVAL_MINUTES", "60")
            ),
        )
    except ValueError as exc:
        raise ConfigError(f"Invalid numeric environment variable: {exc}") from exc

    if config.initial_balance <= 0:
        raise ConfigError("INITIAL_BALANCE must be positive")
    return config


# ── Symbol / strategy settings ───────────────────────────────────────────


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not low <= value <= high:
        raise ConfigError(f"{name} must be between {low} and {high}, got {value}")


@dataclass(frozen=True)
class DcaMultipliers:
    """Buy-notional multipliers applied by grid depth."""

    standard: float = 1.0
    moderate: float = 3.0
    aggressive: float = 4.0

    def __post_init__(self) -> None:
        for f in fields(self):
            if getattr(self, f.name) <= 0:
                raise ConfigError(f"dca_multipliers.{f.name} must be positive")


@dataclass(frozen=True)
class StrategyConfig:
    """Grid strategy settings.  Defaults match a 1-minute spot grid."""

    grid_levels_count: int = 20
    grid_interval_method: str = "DailyBarDiff"
    atr_period: int = 14
    ema_period: int = 200
    ema_deviation_threshold: float = 0.01
    min_volatility_percentage: float = 0.003
    min_volatile_bar_ratio: float = 0.51
    bar_count_for_volatility: int = 500
    profit_target_multiplier: float = 2.0
    dca_multipliers: DcaMultipliers = field(default_factory=DcaMultipliers)
    grid_recalculation_interval_hours: float = 48.0
    base_grid_size: float = 1000.0
    commission_rate: float = 0.001

    def __post_init__(self) -> None:
        _check_range("grid_levels_count", self.grid_levels_count, 5, 50)
        if self.grid_interval_method not in INTERVAL_METHODS:
            raise ConfigError(
                f"grid_interval_method must be one of: "
                f"{', '.join(INTERVAL_METHODS)}"
            )
        _check_range("atr_period", self.atr_period, 5, 50)
        if self.ema_period <= 0:
            raise ConfigError("ema_period must be a positive integer")
        _check_range("ema_deviation_threshold", self.ema_deviation_threshold, 0.001, 0.5)
        _check_range("min_volatility_percentage", self.min_volatility_percentage, 0.001, 0.1)
        _check_range("min_volatile_bar_ratio", self.min_volatile_bar_ratio, 0.1, 1.0)
        _check_range("bar_count_for_volatility", self.bar_count_for_volatility, 10, 1000)
        _check_range("profit_target_multiplier", self.profit_target_multiplier, 1, 10)
        _check_range(
            "grid_recalculation_interval_hours",
            self.grid_recalculation_interval_hours, 1, 168,
        )
        if self.base_grid_size <= 0:
            raise ConfigError("base_grid_size must be positive")
        _check_range("commission_rate", self.commission_rate, 0.0, 0.01)


@dataclass(frozen=True)
class SymbolConfig:
    """Per-pair settings."""

    pair: str
    min_daily_bar_diff_threshold: float
    grid_size: Optional[float] = None  # overrides StrategyConfig.base_grid_size
    price_precision: int = 8
    quantity_precision: int = 8
    base_asset: Optional[str] = None
    quote_asset: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.pair:
            raise ConfigError("Symbol pair must not be empty")
        if self.min_daily_bar_diff_threshold <= 0:
            raise ConfigError(
                f"{self.pair}: min_daily_bar_diff_threshold must be positive"
            )
        if self.grid_size is not None and self.grid_size <= 0:
            raise ConfigError(f"{self.pair}: grid_size must be positive")
        _check_range(f"{self.pair}: price_precision", self.price_precision, 0, 8)
        _check_range(f"{self.pair}: quantity_precision", self.quantity_precision, 0, 8)

    @property
    def assets(self) -> tuple[str, str]:
        """``(base, quote)`` for this pair."""
        if self.base_asset and self.quote_asset:
            return self.base_asset, self.quote_asset
        return parse_symbol(self.pair)


def parse_symbol(symbol: str) -> tuple[str, str]:
    """Split a pair such as ``BTCUSDT`` or ``BTC/USDT`` into ``(base, quote)``.

    Raises ``ConfigError`` when no known quote asset matches.
    """
    if "/" in symbol:
        base, _, quote = symbol.partition("/")
        if base and quote:
            return base, quote
    for quote in KNOWN_QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)], quote
    raise ConfigError(f"Cannot determine base/quote assets for symbol '{symbol}'")


@dataclass(frozen=True)
class PaperConfig:
    """Paper-trading ledger settings.

    ``commission_rate`` defaults to the strategy's rate; the simulator
    rejects a value that differs from it.
    """

    initial_balance: float = 10_000.0
    currency: str = "USDT"
    commission_rate: Optional[float] = None
    slippage_rate: float = 0.0
    enable_reporting: bool = True
    reporting_interval_minutes: float = 60.0
    enable_notifications: bool = True
    history_limit: int = 500
    order_history_limit: int = 1000  # filled/canceled orders kept for queries

    def __post_init__(self) -> None:
        if self.initial_balance <= 0:
            raise ConfigError("initial_balance must be positive")
        if self.commission_rate is not None:
            _check_range("commission_rate", self.commission_rate, 0.0, 0.01)
        if self.slippage_rate < 0:
            raise ConfigError("slippage_rate must not be negative")
        if self.reporting_interval_minutes <= 0:
            raise ConfigError("reporting_interval_minutes must be positive")
        if self.history_limit < 2:
            raise ConfigError("history_limit must be at least 2")
        if self.order_history_limit < 0:
            raise ConfigError("order_history_limit must not be negative")


@dataclass(frozen=True)
class Settings:
    """Everything loaded from the JSON settings file."""

    symbols: list[SymbolConfig]
    strategy: StrategyConfig


def _build(cls, data: dict, section: str):
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(
            f"Unknown {section} setting(s): {', '.join(sorted(unknown))}"
        )
    try:
        return cls(**data)
    except TypeError as exc:
        raise ConfigError(f"Invalid {section} settings: {exc}") from exc


def parse_settings(data: dict) -> Settings:
    """Validate a settings mapping (the parsed JSON document)."""
    raw_symbols = data.get("symbols") or []
    if not raw_symbols:
        raise ConfigError("At least one symbol must be configured")
    symbols = [_build(SymbolConfig, s, "symbol") for s in raw_symbols]

    pairs = [s.pair for s in symbols]
    if len(pairs) != len(set(pairs)):
        raise ConfigError("Duplicate symbol pairs in settings")

    raw_strategy = dict(data.get("strategy") or {})
    if "dca_multipliers" in raw_strategy:
        raw_strategy["dca_multipliers"] = _build(
            DcaMultipliers, raw_strategy["dca_multipliers"], "dca_multipliers",
        )
    strategy = _build(StrategyConfig, raw_strategy, "strategy")
    return Settings(symbols=symbols, strategy=strategy)


def load_settings(path: str | pathlib.Path = "gridbot.json") -> Settings:
    """Load and validate the symbol / strategy settings file."""
    settings_path = pathlib.Path(path)
    if not settings_path.is_file():
        raise ConfigError(f"Settings file not found: {settings_path}")
    try:
        data = json.loads(settings_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Settings file is not valid JSON: {exc}") from exc
    return parse_settings(data)
