"""Strategy data models — candles, grid levels, per-symbol state and metrics."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar.  ``time`` is the bar open time in epoch milliseconds."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class GridLevelStatus(str, Enum):
    """Lifecycle of a grid level."""

    PENDING = "pending"
    FILLED = "filled"
    CANCELED = "canceled"


class SignalSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass
class GridLevel:
    """A price point on a symbol's grid.

    ``buy_size`` is a quote-currency notional; ``sell_size`` is the
    base-currency quantity held after the level's buy has filled.
    """

    price: float
    buy_size: float
    index: int
    sell_size: float = 0.0
    status: GridLevelStatus = GridLevelStatus.PENDING
    order_id: Optional[int | str] = None
    entry_price: Optional[float] = None
    profit_target: Optional[float] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class OpenPosition:
    """A filled grid buy waiting for its profit target."""

    entry_price: float
    quantity: float
    order_id: int | str
    timestamp: int


@dataclass
class StrategyState:
    """Mutable per-symbol strategy state, owned by the strategy engine."""

    symbol: str
    current_price: float
    ema200: float
    atr: float
    grid_interval: float
    base_grid_size: float
    last_grid_recalculation_time: int
    updated_at: int = 0  # time of the latest candle applied
    grid_levels: list[GridLevel] = field(default_factory=list)
    total_profit: float = 0.0
    open_positions: dict[int, OpenPosition] = field(default_factory=dict)

    def level(self, index: int) -> Optional[GridLevel]:
        """Return the grid level with *index*, or ``None``."""
        for level in self.grid_levels:
            if level.index == index:
                return level
        return None


@dataclass(frozen=True)
class VolatilityAnalysis:
    """Outcome of a volatile-bar screening pass."""

    volatile_bar_ratio: float
    required_ratio: float
    volatile_bars: int
    total_bars: int
    eligible: bool
    reason: str


@dataclass
class StrategyMetrics:
    """Per-symbol performance counters and eligibility."""

    total_trades: int = 0
    winning_trades: int = 0
    total_profit: float = 0.0
    win_rate: float = 0.0
    avg_profit_per_trade: float = 0.0
    is_eligible: bool = True
    volatility_analysis: Optional[VolatilityAnalysis] = None


@dataclass(frozen=True)
class TradingSignal:
    """A buy or sell instruction derived from a grid level."""

    side: SignalSide
    symbol: str
    price: float
    quantity: float
    grid_level: GridLevel
    confidence: float
    timestamp: int


@dataclass(frozen=True)
class TradeSignals:
    buy: list[TradingSignal] = field(default_factory=list)
    sell: list[TradingSignal] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.buy or self.sell)


@dataclass(frozen=True)
class TradeResult:
    """A completed grid round trip."""

    symbol: str
    grid_index: int
    entry_price: float
    sell_price: float
    quantity: float
    gross_profit: float
    commission: float
    net_profit: float
