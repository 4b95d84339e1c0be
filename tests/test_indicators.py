"""Tests for gridbot.strategy.indicators — pure indicator math."""

import math

import pytest

from gridbot.errors import InsufficientDataError, MalformedCandleError
from gridbot.strategy.indicators import (
    calculate_atr,
    calculate_bollinger,
    calculate_ema,
    calculate_ema_series,
    calculate_macd,
    calculate_rsi,
    calculate_sma,
    calculate_volatility,
    true_range,
    validate_candles,
)
from gridbot.strategy.models import Candle


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_candle(time, o, h, l, c, vol=1.0):
    return Candle(time=time, open=o, high=h, low=l, close=c, volume=vol)


def _flat_candles(n, price=100.0, spread=1.0):
    """*n* one-minute candles closing at *price* with a fixed high/low spread."""
    return [
        _make_candle(i * 60_000, price, price + spread, price - spread, price)
        for i in range(n)
    ]


def _closes_to_candles(closes):
    return [
        _make_candle(i * 60_000, c, c + 1.0, c - 1.0, c)
        for i, c in enumerate(closes)
    ]


# ── Validation ───────────────────────────────────────────────────────────


class TestValidateCandles:
    def test_empty_list_is_valid(self):
        validate_candles([])

    def test_nan_close_rejected(self):
        candles = _flat_candles(3)
        candles[1] = _make_candle(60_000, 100.0, 101.0, 99.0, float("nan"))
        with pytest.raises(MalformedCandleError):
            validate_candles(candles)

    def test_high_below_close_rejected(self):
        with pytest.raises(MalformedCandleError):
            validate_candles([_make_candle(0, 100.0, 100.5, 99.0, 101.0)])

    def test_non_positive_price_rejected(self):
        with pytest.raises(MalformedCandleError):
            validate_candles([_make_candle(0, 0.0, 1.0, 0.0, 0.5)])

    def test_unsorted_times_rejected(self):
        candles = [_make_candle(120_000, 100, 101, 99, 100), _make_candle(60_000, 100, 101, 99, 100)]
        with pytest.raises(MalformedCandleError, match="sorted"):
            validate_candles(candles)


# ── ATR ──────────────────────────────────────────────────────────────────


class TestATR:
    def test_true_range_uses_previous_close_gap(self):
        prev = _make_candle(0, 100, 101, 99, 100)
        gap_up = _make_candle(60_000, 104, 105, 103, 104)
        assert true_range(gap_up, prev) == pytest.approx(5.0)

    def test_constant_range(self):
        assert calculate_atr(_flat_candles(20), period=14) == pytest.approx(2.0)

    def test_uses_last_period_true_ranges(self):
        candles = _flat_candles(10, spread=1.0) + [
            _make_candle((10 + i) * 60_000, 100, 103, 97, 100) for i in range(5)
        ]
        assert calculate_atr(candles, period=5) == pytest.approx(6.0)

    def test_non_negative_and_finite(self):
        closes = [100 + 5 * math.sin(i / 3) for i in range(40)]
        atr = calculate_atr(_closes_to_candles(closes), period=14)
        assert atr >= 0
        assert math.isfinite(atr)

    def test_insufficient_data_raises(self):
        with pytest.raises(InsufficientDataError) as exc_info:
            calculate_atr(_flat_candles(14), period=14)
        assert exc_info.value.required == 15
        assert exc_info.value.actual == 14


# ── Moving averages ──────────────────────────────────────────────────────


class TestMovingAverages:
    @pytest.mark.parametrize("period", [1, 5, 20, 200])
    def test_ema_of_constant_is_constant(self, period):
        candles = _flat_candles(period + 10, price=42.5)
        assert calculate_ema(candles, period) == pytest.approx(42.5)

    def test_ema_series_seeded_with_sma(self):
        series = calculate_ema_series([1.0, 2.0, 3.0, 4.0, 5.0], 3)
        assert math.isnan(series[0]) and math.isnan(series[1])
        assert series[2:] == pytest.approx([2.0, 3.0, 4.0])

    def test_ema_insufficient_data(self):
        with pytest.raises(InsufficientDataError):
            calculate_ema(_flat_candles(5), 10)

    def test_sma_uses_last_period(self):
        candles = _closes_to_candles([10.0, 20.0, 30.0, 40.0])
        assert calculate_sma(candles, 2) == pytest.approx(35.0)


# ── Oscillators & bands ──────────────────────────────────────────────────


class TestOscillators:
    def test_bollinger_collapses_on_flat_prices(self):
        bands = calculate_bollinger(_flat_candles(25), period=20)
        assert bands.upper == pytest.approx(100.0)
        assert bands.middle == pytest.approx(100.0)
        assert bands.lower == pytest.approx(100.0)

    def test_bollinger_band_width(self):
        candles = _closes_to_candles([99.0, 101.0] * 10)
        bands = calculate_bollinger(candles, period=20, std_dev=2.0)
        assert bands.middle == pytest.approx(100.0)
        assert bands.upper == pytest.approx(102.0)
        assert bands.lower == pytest.approx(98.0)

    def test_rsi_all_gains_is_100(self):
        candles = _closes_to_candles([100.0 + i for i in range(20)])
        assert calculate_rsi(candles, 14) == pytest.approx(100.0)

    def test_rsi_balanced_moves_is_50(self):
        candles = _closes_to_candles([100.0, 101.0] * 8)
        assert calculate_rsi(candles, 14) == pytest.approx(50.0)

    def test_macd_flat_is_zero(self):
        macd = calculate_macd(_flat_candles(40))
        assert macd.macd == pytest.approx(0.0)
        assert macd.signal == pytest.approx(0.0)
        assert macd.histogram == pytest.approx(0.0)

    def test_macd_requires_slow_plus_signal(self):
        with pytest.raises(InsufficientDataError):
            calculate_macd(_flat_candles(33))

    def test_volatility_flat_is_zero(self):
        assert calculate_volatility(_flat_candles(30), 20) == pytest.approx(0.0)

    def test_volatility_positive_on_moves(self):
        candles = _closes_to_candles([100.0, 102.0] * 15)
        assert calculate_volatility(candles, 20) > 0
