"""Technical indicators — ATR, EMA, SMA, RSI, MACD, Bollinger Bands, volatility.

Pure functions over an ordered list of candles, no I/O.  Every function
validates its input first: malformed candles raise ``MalformedCandleError``
and short input raises ``InsufficientDataError``.
"""

import math
from dataclasses import dataclass

from gridbot.errors import InsufficientDataError, MalformedCandleError
from gridbot.strategy.models import Candle

_FIELDS = ("open", "high", "low", "close", "volume")


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class MACD:
    macd: float
    signal: float
    histogram: float


# ── Validation ───────────────────────────────────────────────────────────


def ensure_finite(value: float, name: str) -> float:
    """Return *value* unchanged, or raise if it is ``NaN`` or infinite."""
    if not math.isfinite(value):
        raise MalformedCandleError(f"{name} is not finite: {value}")
    return value


def validate_candles(candles: list[Candle]) -> None:
    """Check OHLC invariants, finiteness and strictly increasing time.

    An empty list is valid; length requirements are each indicator's concern.
    """
    previous_time = None
    for i, c in enumerate(candles):
        for name in _FIELDS:
            value = getattr(c, name)
            if value is None or not math.isfinite(value):
                raise MalformedCandleError(
                    f"Invalid candle at index {i}: {name}={value!r}"
                )
        if min(c.open, c.high, c.low, c.close) <= 0 or c.volume < 0:
            raise MalformedCandleError(
                f"Invalid candle at index {i}: prices must be positive"
            )
        if c.high < max(c.open, c.close) or c.low > min(c.open, c.close):
            raise MalformedCandleError(
                f"Invalid candle at index {i}: high must be >= open/close "
                f"and low must be <= open/close"
            )
        if previous_time is not None and c.time <= previous_time:
            raise MalformedCandleError(
                f"Candles must be sorted by time; invalid order at index {i}"
            )
        previous_time = c.time


def _require(candles: list[Candle], required: int, indicator: str) -> None:
    validate_candles(candles)
    if len(candles) < required:
        raise InsufficientDataError(indicator, required, len(candles))


# ── ATR ──────────────────────────────────────────────────────────────────


def true_range(current: Candle, previous: Candle) -> float:
    """TR = max(high - low, |high - prev_close|, |low - prev_close|)."""
    return max(
        current.high - current.low,
        abs(current.high - previous.close),
        abs(current.low - previous.close),
    )


def calculate_atr(candles: list[Candle], period: int = 14) -> float:
    """Calculate the Average True Range over *period* candles.

    Requires at least ``period + 1`` candles (need a previous close for TR).
    Returns the simple average of the last *period* true ranges.
    """
    _require(candles, period + 1, f"ATR({period})")

    true_ranges = [
        true_range(candles[i], candles[i - 1]) for i in range(1, len(candles))
    ]
    recent = true_ranges[-period:]
    return sum(recent) / len(recent)


# ── Moving averages ──────────────────────────────────────────────────────


def calculate_ema_series(values: list[float], period: int) -> list[float]:
    """EMA over a plain value series.

    ``EMA_today = value × k + EMA_yesterday × (1 - k)`` where
    ``k = 2 / (period + 1)``, seeded with the SMA of the first *period*
    values.  Entries before the seed are ``float('nan')``.
    """
    if len(values) < period:
        raise InsufficientDataError(f"EMA({period})", period, len(values))

    k = 2.0 / (period + 1)
    ema: list[float] = [float("nan")] * len(values)
    ema[period - 1] = sum(values[:period]) / period

    for i in range(period, len(values)):
        ema[i] = values[i] * k + ema[i - 1] * (1 - k)

    return ema


def calculate_ema(
    candles: list[Candle], period: int, field: str = "close",
) -> float:
    """Return the latest EMA of *field* over *candles*.

    Requires at least *period* candles.
    """
    _require(candles, period, f"EMA({period})")
    values = [getattr(c, field) for c in candles]
    return calculate_ema_series(values, period)[-1]


def calculate_sma(
    candles: list[Candle], period: int, field: str = "close",
) -> float:
    """Mean of the last *period* values of *field*."""
    _require(candles, period, f"SMA({period})")
    recent = [getattr(c, field) for c in candles[-period:]]
    return sum(recent) / period


# ── Bollinger Bands ──────────────────────────────────────────────────────


def calculate_bollinger(
    candles: list[Candle],
    period: int = 20,
    std_dev: float = 2.0,
) -> BollingerBands:
    """Bollinger Bands over the last *period* closes.

    Middle = SMA(close, *period*); bands = middle ± *std_dev* × σ, where σ
    uses the population variance.
    """
    middle = calculate_sma(candles, period)
    window = [c.close for c in candles[-period:]]
    variance = sum((x - middle) ** 2 for x in window) / period
    sigma = math.sqrt(variance)
    return BollingerBands(
        upper=middle + std_dev * sigma,
        middle=middle,
        lower=middle - std_dev * sigma,
    )


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(candles: list[Candle], period: int = 14) -> float:
    """Relative Strength Index from simple averages of the last *period* deltas.

    RSI = 100 when the average loss is zero, otherwise
    ``100 - 100 / (1 + avg_gain / avg_loss)``.
    """
    _require(candles, period + 1, f"RSI({period})")

    closes = [c.close for c in candles]
    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))][-period:]

    avg_gain = sum(max(d, 0.0) for d in deltas) / period
    avg_loss = sum(abs(min(d, 0.0)) for d in deltas) / period

    if avg_loss == 0:
        return 100.0
    return 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)


# ── MACD ─────────────────────────────────────────────────────────────────


def calculate_macd(
    candles: list[Candle],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> MACD:
    """Moving Average Convergence/Divergence of closes.

    MACD line = EMA(fast) - EMA(slow); signal = EMA(signal) of the MACD
    line.  Requires ``slow + signal - 1`` candles.
    """
    _require(candles, slow + signal - 1, f"MACD({fast},{slow},{signal})")

    closes = [c.close for c in candles]
    fast_ema = calculate_ema_series(closes, fast)
    slow_ema = calculate_ema_series(closes, slow)
    macd_line = [f - s for f, s in zip(fast_ema[slow - 1:], slow_ema[slow - 1:])]
    signal_line = calculate_ema_series(macd_line, signal)

    return MACD(
        macd=macd_line[-1],
        signal=signal_line[-1],
        histogram=macd_line[-1] - signal_line[-1],
    )


# ── Volatility ───────────────────────────────────────────────────────────


def calculate_volatility(candles: list[Candle], period: int) -> float:
    """Population standard deviation of the last *period* simple returns, in %."""
    _require(candles, period + 1, f"Volatility({period})")

    closes = [c.close for c in candles[-(period + 1):]]
    returns = [
        (closes[i] - closes[i - 1]) / closes[i - 1] for i in range(1, len(closes))
    ]
    mean = sum(returns) / period
    variance = sum((r - mean) ** 2 for r in returns) / period
    return math.sqrt(variance) * 100.0
