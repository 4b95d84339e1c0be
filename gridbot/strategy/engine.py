"""GridBot — Strategy engine.

Owns per-symbol grid state and metrics.  Turns candles into an ATR-spaced
price grid, gates trading on volatility eligibility and the EMA filter, and
emits buy/sell signals.  Fills are reported back through
``mark_grid_level_filled`` and ``process_completed_trade``.
"""

import copy
import logging
import math
from dataclasses import replace
from typing import Optional

from gridbot.config import StrategyConfig, SymbolConfig
from gridbot.errors import InsufficientDataError, SymbolNotConfiguredError
from gridbot.strategy.indicators import calculate_ema, ensure_finite, validate_candles
from gridbot.strategy.models import (
    Candle,
    GridLevel,
    GridLevelStatus,
    OpenPosition,
    SignalSide,
    StrategyMetrics,
    StrategyState,
    TradeResult,
    TradeSignals,
    TradingSignal,
    VolatilityAnalysis,
)
from gridbot.strategy.volatility import (
    METHOD_DAILY_BAR_DIFF,
    analyze_volatility,
    build_tiers,
    resolve_interval,
)

logger = logging.getLogger("gridbot")

_MS_PER_HOUR = 60 * 60 * 1000


class StrategyEngine:
    """Grid strategy for one or more symbols.

    Args:
        strategy_config: Validated strategy settings.
        symbols: Per-pair settings; only these pairs can be initialized.
    """

    def __init__(
        self,
        strategy_config: StrategyConfig,
        symbols: list[SymbolConfig],
    ) -> None:
        self._config = strategy_config
        self._symbols = {s.pair: s for s in symbols}
        self._states: dict[str, StrategyState] = {}
        self._metrics: dict[str, StrategyMetrics] = {}

    @property
    def strategy_config(self) -> StrategyConfig:
        return self._config

    def symbol_config(self, symbol: str) -> Optional[SymbolConfig]:
        return self._symbols.get(symbol)

    # ── Initialization ───────────────────────────────────────────────────

    def initialize_strategy(self, symbol: str, candles: list[Candle]) -> None:
        """Create fresh state and metrics for *symbol* and build its grid.

        Raises:
            SymbolNotConfiguredError: *symbol* has no symbol configuration.
            MalformedCandleError: *candles* fail validation.
        """
        symbol_cfg = self._symbols.get(symbol)
        if symbol_cfg is None:
            raise SymbolNotConfiguredError(symbol)
        validate_candles(candles)
        if not candles:
            raise InsufficientDataError("strategy initialization", 1, 0)

        cfg = self._config
        latest = candles[-1]
        self._metrics[symbol] = StrategyMetrics()
        interval = self.calculate_grid_interval(
            symbol, candles, cfg.grid_interval_method,
        )
        ema = self._ema_or_zero(symbol, candles)

        self._states[symbol] = StrategyState(
            symbol=symbol,
            current_price=latest.close,
            ema200=ema,
            atr=interval,
            grid_interval=interval,
            base_grid_size=symbol_cfg.grid_size or cfg.base_grid_size,
            last_grid_recalculation_time=latest.time,
            updated_at=latest.time,
        )
        self.recalculate_grid_levels(symbol, now=latest.time)

        analysis = analyze_volatility(
            candles,
            cfg.bar_count_for_volatility,
            cfg.min_volatility_percentage,
            cfg.min_volatile_bar_ratio,
        )
        metrics = self._metrics[symbol]
        metrics.volatility_analysis = analysis
        metrics.is_eligible = analysis.eligible and interval > 0

        logger.info(
            "Strategy initialized for %s: price=%.8f ema=%.8f interval=%.8f "
            "levels=%d eligible=%s",
            symbol, latest.close, ema, interval,
            len(self._states[symbol].grid_levels), metrics.is_eligible,
        )
        if not metrics.is_eligible:
            logger.warning("%s not eligible for grid trading: %s", symbol, analysis.reason)

    def _ema_or_zero(self, symbol: str, candles: list[Candle]) -> float:
        """EMA over *candles*, or ``0.0`` when there are too few of them."""
        try:
            ema = calculate_ema(candles, self._config.ema_period)
        except InsufficientDataError as exc:
            logger.debug("%s: EMA filter disabled (%s)", symbol, exc)
            return 0.0
        return ensure_finite(ema, "EMA")

    # ── Grid sizing ──────────────────────────────────────────────────────

    def calculate_grid_interval(
        self, symbol: str, candles: list[Candle], method: str,
    ) -> float:
        """Size the grid interval for *symbol* using the *method* tier chain.

        Returns ``0.0`` when every tier lacks data or the volatility screen
        rejects the symbol.  Malformed candles raise.
        """
        cfg = self._config
        tiers = build_tiers(
            method,
            cfg.atr_period,
            cfg.bar_count_for_volatility,
            cfg.min_volatility_percentage,
            cfg.min_volatile_bar_ratio,
        )
        estimates = resolve_interval(tiers, candles)
        decisive = estimates[-1]

        if decisive.insufficient:
            logger.warning(
                "%s: not enough data to size grid (%d candles, method=%s)",
                symbol, len(candles), method,
            )
            interval = 0.0
        elif decisive.rejected:
            logger.warning(
                "%s: %s tier rejected the symbol (%s)", symbol, decisive.tier,
                decisive.analysis.reason if decisive.analysis else "zero interval",
            )
            interval = 0.0
        else:
            interval = decisive.value
            if len(estimates) > 1:
                logger.info(
                    "%s: grid interval from %s fallback (%.8f)",
                    symbol, decisive.tier, interval,
                )

        if method == METHOD_DAILY_BAR_DIFF:
            analysis = estimates[0].analysis
            if analysis is None:
                # Too few bars for the full window: screen what exists.
                analysis = analyze_volatility(
                    candles,
                    cfg.bar_count_for_volatility,
                    cfg.min_volatility_percentage,
                    cfg.min_volatile_bar_ratio,
                )
            self._record_analysis(symbol, analysis, interval)
        return interval

    def _record_analysis(
        self, symbol: str, analysis: VolatilityAnalysis, interval: float,
    ) -> None:
        metrics = self._metrics.get(symbol)
        if metrics is None:
            return
        metrics.volatility_analysis = analysis
        metrics.is_eligible = analysis.eligible and interval > 0

    def calculate_profit_target(self, entry_price: float, grid_interval: float) -> float:
        """Sell target: ``profit_target_multiplier`` grid units plus two for fees."""
        return entry_price + (self._config.profit_target_multiplier + 2) * grid_interval

    def recalculate_grid_levels(self, symbol: str, now: Optional[int] = None) -> None:
        """Rebuild *symbol*'s grid around the current price at ``atr`` spacing.

        Skipped when ``atr`` is below the symbol's minimum bar-difference
        threshold.  Levels holding an open position are carried over so that
        every open position still points at a filled level.
        """
        state = self._states.get(symbol)
        symbol_cfg = self._symbols.get(symbol)
        if state is None or symbol_cfg is None:
            logger.warning("Cannot recalculate grid: no strategy state for %s", symbol)
            return

        atr = state.atr
        if atr <= 0 or atr < symbol_cfg.min_daily_bar_diff_threshold:
            logger.info(
                "Skipping grid for %s: atr=%.8f below threshold %.8f",
                symbol, atr, symbol_cfg.min_daily_bar_diff_threshold,
            )
            return

        cfg = self._config
        dca = cfg.dca_multipliers
        half = cfg.grid_levels_count // 2
        aggressive_from = -math.floor(half * 0.8)
        moderate_from = -math.floor(half * 0.5)
        current = state.current_price

        levels: list[GridLevel] = []
        for i in range(-half, half + 1):
            price = current + i * atr
            if abs(price - current) < 0.1 * atr or price <= 0:
                continue

            if i <= aggressive_from:
                multiplier = dca.aggressive
            elif i <= moderate_from:
                multiplier = dca.moderate
            else:
                multiplier = dca.standard

            index = i + half
            if index in state.open_positions:
                continue
            levels.append(GridLevel(
                price=round(price, symbol_cfg.price_precision),
                buy_size=state.base_grid_size * multiplier,
                index=index,
                profit_target=round(
                    self.calculate_profit_target(price, atr),
                    symbol_cfg.price_precision,
                ),
            ))

        for index in state.open_positions:
            held = state.level(index)
            if held is not None:
                levels.append(held)
        levels.sort(key=lambda level: level.index)

        state.grid_levels = levels
        state.grid_interval = atr
        state.last_grid_recalculation_time = now if now is not None else state.updated_at

        logger.info(
            "Grid recalculated for %s: %d levels around %.8f (interval %.8f)",
            symbol, len(levels), current, atr,
        )

    # ── Market updates ───────────────────────────────────────────────────

    def should_trade_based_on_ema(self, symbol: str) -> bool:
        state = self._states.get(symbol)
        if state is None:
            return False
        if state.ema200 == 0:
            return True

        deviation = abs(state.current_price - state.ema200) / state.ema200
        allowed = deviation <= self._config.ema_deviation_threshold
        if not allowed:
            logger.debug(
                "%s: EMA filter blocks trading (deviation %.4f > %.4f)",
                symbol, deviation, self._config.ema_deviation_threshold,
            )
        return allowed

    def update_state(
        self,
        symbol: str,
        candle: Candle,
        history: list[Candle],
        now: Optional[int] = None,
    ) -> None:
        """Apply a new bar to *symbol*'s state.

        *history* is the rolling candle window ending with *candle*.  The
        grid is rebuilt once ``grid_recalculation_interval_hours`` have
        passed since the last rebuild, measured against *now* or the candle
        time.
        """
        state = self._states.get(symbol)
        if state is None:
            logger.warning("Ignoring update for uninitialized symbol %s", symbol)
            return

        state.current_price = ensure_finite(candle.close, "close")
        state.updated_at = candle.time
        state.ema200 = self._ema_or_zero(symbol, history)
        state.atr = self.calculate_grid_interval(
            symbol, history, self._config.grid_interval_method,
        )

        clock = now if now is not None else candle.time
        elapsed = clock - state.last_grid_recalculation_time
        if elapsed > self._config.grid_recalculation_interval_hours * _MS_PER_HOUR:
            logger.info("Recalculating grid for %s after %.1f h", symbol, elapsed / _MS_PER_HOUR)
            self.recalculate_grid_levels(symbol, now=clock)

        logger.debug(
            "State updated for %s: price=%.8f ema=%.8f atr=%.8f",
            symbol, state.current_price, state.ema200, state.atr,
        )

    # ── Signals ──────────────────────────────────────────────────────────

    def get_trade_signals(self, symbol: str) -> TradeSignals:
        """Buy/sell signals for *symbol* at its current price.

        Empty for unknown or ineligible symbols and when the EMA filter
        blocks trading.
        """
        state = self._states.get(symbol)
        metrics = self._metrics.get(symbol)
        if state is None or metrics is None or not metrics.is_eligible:
            return TradeSignals()
        if not self.should_trade_based_on_ema(symbol):
            return TradeSignals()

        current = state.current_price
        buys: list[TradingSignal] = []
        sells: list[TradingSignal] = []
        for level in state.grid_levels:
            if level.status is GridLevelStatus.PENDING:
                if current <= level.price < current + state.grid_interval:
                    buys.append(TradingSignal(
                        side=SignalSide.BUY,
                        symbol=symbol,
                        price=current,
                        quantity=level.buy_size / current,
                        grid_level=replace(level),
                        confidence=self.calculate_signal_confidence(symbol, SignalSide.BUY, level),
                        timestamp=state.updated_at,
                    ))
            elif level.status is GridLevelStatus.FILLED:
                if (
                    level.sell_size > 0
                    and level.profit_target is not None
                    and level.profit_target <= current
                ):
                    sells.append(TradingSignal(
                        side=SignalSide.SELL,
                        symbol=symbol,
                        price=current,
                        quantity=level.sell_size,
                        grid_level=replace(level),
                        confidence=self.calculate_signal_confidence(symbol, SignalSide.SELL, level),
                        timestamp=state.updated_at,
                    ))

        if buys or sells:
            logger.info(
                "Signals for %s at %.8f: %d buy, %d sell",
                symbol, current, len(buys), len(sells),
            )
        return TradeSignals(buy=buys, sell=sells)

    def calculate_signal_confidence(
        self, symbol: str, side: SignalSide, level: GridLevel,
    ) -> float:
        """Informational score in ``[0.1, 1.0]``; it never sizes orders."""
        state = self._states.get(symbol)
        if state is None:
            return 0.5

        confidence = 0.7
        if state.ema200 > 0:
            deviation = abs(state.current_price - state.ema200) / state.ema200
            confidence += (self._config.ema_deviation_threshold - deviation) * 0.5
        if state.atr > state.current_price * 0.02:
            confidence += 0.1
        if side is SignalSide.BUY and level.price < state.current_price * 0.95:
            confidence += 0.1
        return max(0.1, min(1.0, confidence))

    # ── Fill reporting ───────────────────────────────────────────────────

    def mark_grid_level_filled(
        self,
        symbol: str,
        grid_index: int,
        fill_price: float,
        quantity: float,
        order_id: int | str,
        timestamp: Optional[int] = None,
    ) -> bool:
        """Move a pending level to ``FILLED`` and open a position on it.

        Returns ``False`` (and changes nothing) for unknown symbols, unknown
        levels and levels that are not pending.
        """
        state = self._states.get(symbol)
        if state is None:
            return False
        level = state.level(grid_index)
        if level is None:
            logger.warning("Grid level %d not found for %s", grid_index, symbol)
            return False
        if level.status is not GridLevelStatus.PENDING:
            logger.warning(
                "Grid level %d for %s is %s, not pending", grid_index, symbol,
                level.status.value,
            )
            return False

        level.status = GridLevelStatus.FILLED
        level.entry_price = fill_price
        level.sell_size = quantity
        level.order_id = order_id
        state.open_positions[grid_index] = OpenPosition(
            entry_price=fill_price,
            quantity=quantity,
            order_id=order_id,
            timestamp=timestamp if timestamp is not None else state.updated_at,
        )
        logger.info(
            "Grid level %d filled for %s: %.8f @ %.8f (order %s)",
            grid_index, symbol, quantity, fill_price, order_id,
        )
        return True

    def process_completed_trade(
        self,
        symbol: str,
        grid_index: int,
        sell_price: float,
        quantity: float,
    ) -> Optional[TradeResult]:
        """Close the open position on *grid_index* and update metrics.

        The level goes back to ``PENDING`` so it can be bought again.
        Returns ``None`` when there is no such position.
        """
        state = self._states.get(symbol)
        metrics = self._metrics.get(symbol)
        if state is None or metrics is None:
            return None
        position = state.open_positions.get(grid_index)
        if position is None:
            logger.warning("No open position on grid %d for %s", grid_index, symbol)
            return None

        gross = (sell_price - position.entry_price) * quantity
        commission = (
            (position.entry_price + sell_price) * quantity * self._config.commission_rate
        )
        net = gross - commission

        metrics.total_trades += 1
        metrics.total_profit += net
        if net > 0:
            metrics.winning_trades += 1
        metrics.win_rate = metrics.winning_trades / metrics.total_trades * 100
        metrics.avg_profit_per_trade = metrics.total_profit / metrics.total_trades

        state.total_profit += net
        del state.open_positions[grid_index]

        level = state.level(grid_index)
        if level is not None:
            level.status = GridLevelStatus.PENDING
            level.sell_size = 0.0
            level.entry_price = None
            level.order_id = None

        logger.info(
            "Trade completed for %s grid %d: net %.8f (gross %.8f, fee %.8f)",
            symbol, grid_index, net, gross, commission,
        )
        return TradeResult(
            symbol=symbol,
            grid_index=grid_index,
            entry_price=position.entry_price,
            sell_price=sell_price,
            quantity=quantity,
            gross_profit=gross,
            commission=commission,
            net_profit=net,
        )

    # ── Screening & accessors ────────────────────────────────────────────

    def is_symbol_suitable_for_trading(
        self, symbol: str, candles: list[Candle],
    ) -> VolatilityAnalysis:
        """Screen *candles* without touching any strategy state."""
        cfg = self._config
        analysis = analyze_volatility(
            candles,
            cfg.bar_count_for_volatility,
            cfg.min_volatility_percentage,
            cfg.min_volatile_bar_ratio,
        )
        logger.info("Suitability of %s: %s", symbol, analysis.reason)
        return analysis

    def get_strategy_state(self, symbol: str) -> Optional[StrategyState]:
        state = self._states.get(symbol)
        return copy.deepcopy(state) if state is not None else None

    def get_grid_level(self, symbol: str, grid_index: int) -> Optional[GridLevel]:
        state = self._states.get(symbol)
        level = state.level(grid_index) if state is not None else None
        return replace(level) if level is not None else None

    def has_open_position(self, symbol: str, grid_index: int) -> bool:
        state = self._states.get(symbol)
        return state is not None and grid_index in state.open_positions

    def get_metrics(self, symbol: str) -> Optional[StrategyMetrics]:
        metrics = self._metrics.get(symbol)
        return replace(metrics) if metrics is not None else None

    def get_active_symbols(self) -> list[str]:
        return list(self._states)

    def reset_strategy(self, symbol: str) -> None:
        self._states.pop(symbol, None)
        self._metrics.pop(symbol, None)
        logger.info("Strategy reset for %s", symbol)

    def reset_metrics(self, symbol: str) -> None:
        """Zero the trade counters, keeping the eligibility verdict."""
        metrics = self._metrics.get(symbol)
        if metrics is None:
            return
        self._metrics[symbol] = StrategyMetrics(
            is_eligible=metrics.is_eligible,
            volatility_analysis=metrics.volatility_analysis,
        )
