"""Volatile-bar screening and the grid-interval fallback chain.

A symbol is eligible for grid trading when enough recent bars move more
than ``min_volatility_pct`` from open to close.  The grid interval is sized
by the first tier in an ordered chain that has enough data to decide:
``DailyBarDiff`` then ``ATR`` for the bar-difference method, ``ATR`` alone
for the ATR method.  A chain that runs out of tiers yields ``0.0``, which
callers treat as "do not trade".
"""

from dataclasses import dataclass
from typing import Optional, Protocol

from gridbot.strategy.indicators import calculate_atr, ensure_finite, validate_candles
from gridbot.strategy.models import Candle, VolatilityAnalysis

METHOD_ATR = "ATR"
METHOD_DAILY_BAR_DIFF = "DailyBarDiff"
INTERVAL_METHODS = (METHOD_ATR, METHOD_DAILY_BAR_DIFF)


def _is_volatile(candle: Candle, min_volatility_pct: float) -> bool:
    return abs(candle.close - candle.open) / candle.open > min_volatility_pct


def analyze_volatility(
    candles: list[Candle],
    bar_count: int,
    min_volatility_pct: float,
    min_volatile_bar_ratio: float,
) -> VolatilityAnalysis:
    """Screen the last *bar_count* candles (or all, if fewer) for volatility."""
    validate_candles(candles)
    bars = candles[-bar_count:]
    if not bars:
        return VolatilityAnalysis(
            volatile_bar_ratio=0.0,
            required_ratio=min_volatile_bar_ratio,
            volatile_bars=0,
            total_bars=0,
            eligible=False,
            reason="No candle data available for volatility screening",
        )

    volatile = sum(1 for c in bars if _is_volatile(c, min_volatility_pct))
    ratio = volatile / len(bars)
    eligible = ratio >= min_volatile_bar_ratio
    if eligible:
        reason = (
            f"{volatile}/{len(bars)} bars moved more than "
            f"{min_volatility_pct * 100:.2f}% ({ratio * 100:.1f}% >= "
            f"{min_volatile_bar_ratio * 100:.1f}%)"
        )
    else:
        reason = (
            f"Insufficient volatility: {volatile}/{len(bars)} volatile bars "
            f"({ratio * 100:.1f}% < {min_volatile_bar_ratio * 100:.1f}%)"
        )
    return VolatilityAnalysis(
        volatile_bar_ratio=ratio,
        required_ratio=min_volatile_bar_ratio,
        volatile_bars=volatile,
        total_bars=len(bars),
        eligible=eligible,
        reason=reason,
    )


# ── Interval tiers ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class IntervalEstimate:
    """Tri-state result of one tier.

    ``insufficient`` means the tier could not decide and the next tier should
    be tried.  Otherwise ``value`` is final (``0.0`` when the tier rejected
    the symbol).  ``analysis`` carries the screening verdict when the tier
    produced one.
    """

    tier: str
    value: float = 0.0
    insufficient: bool = False
    analysis: Optional[VolatilityAnalysis] = None

    @property
    def rejected(self) -> bool:
        return not self.insufficient and self.value == 0.0


class IntervalTier(Protocol):
    name: str

    def estimate(self, candles: list[Candle]) -> IntervalEstimate:
        ...


class AtrTier:
    """Grid interval = ATR over ``period`` candles."""

    name = METHOD_ATR

    def __init__(self, period: int) -> None:
        self.period = period

    def estimate(self, candles: list[Candle]) -> IntervalEstimate:
        validate_candles(candles)
        if len(candles) < self.period + 1:
            return IntervalEstimate(tier=self.name, insufficient=True)
        atr = ensure_finite(calculate_atr(candles, self.period), "ATR")
        return IntervalEstimate(tier=self.name, value=atr)


class DailyBarDiffTier:
    """Grid interval = mean open/close move of the volatile bars, divided by 4."""

    name = METHOD_DAILY_BAR_DIFF

    def __init__(
        self,
        bar_count: int,
        min_volatility_pct: float,
        min_volatile_bar_ratio: float,
    ) -> None:
        self.bar_count = bar_count
        self.min_volatility_pct = min_volatility_pct
        self.min_volatile_bar_ratio = min_volatile_bar_ratio

    def estimate(self, candles: list[Candle]) -> IntervalEstimate:
        validate_candles(candles)
        if len(candles) < self.bar_count:
            return IntervalEstimate(tier=self.name, insufficient=True)

        bars = candles[-self.bar_count:]
        analysis = analyze_volatility(
            bars, self.bar_count, self.min_volatility_pct, self.min_volatile_bar_ratio,
        )
        if not analysis.eligible:
            return IntervalEstimate(tier=self.name, value=0.0, analysis=analysis)

        moves = [
            abs(c.close - c.open) for c in bars
            if _is_volatile(c, self.min_volatility_pct)
        ]
        interval = ensure_finite(sum(moves) / len(moves) / 4.0, "grid interval")
        return IntervalEstimate(tier=self.name, value=interval, analysis=analysis)


def build_tiers(
    method: str,
    atr_period: int,
    bar_count: int,
    min_volatility_pct: float,
    min_volatile_bar_ratio: float,
) -> list[IntervalTier]:
    """Return the ordered fallback chain for *method*."""
    atr = AtrTier(atr_period)
    if method == METHOD_ATR:
        return [atr]
    if method == METHOD_DAILY_BAR_DIFF:
        return [
            DailyBarDiffTier(bar_count, min_volatility_pct, min_volatile_bar_ratio),
            atr,
        ]
    raise ValueError(
        f"Unknown grid interval method '{method}'. "
        f"Available: {', '.join(INTERVAL_METHODS)}"
    )


def resolve_interval(
    tiers: list[IntervalTier], candles: list[Candle],
) -> list[IntervalEstimate]:
    """Try *tiers* in order and return every estimate produced.

    The last estimate is the decisive one; if it is still ``insufficient``
    the chain is exhausted and the interval is ``0.0``.
    """
    estimates: list[IntervalEstimate] = []
    for tier in tiers:
        estimate = tier.estimate(candles)
        estimates.append(estimate)
        if not estimate.insufficient:
            break
    return estimates
