"""GridBot — Trading simulator (paper-trading ledger).

Feeds market bars into the strategy engine, turns its signals into
virtual limit orders, matches those orders against later bars and keeps a
virtual balance ledger.  Every fill is reported back to the engine so
grid state and balances stay in step.

Ticks for one symbol are serialized with an ``asyncio.Lock``; the ledger
is only touched from inside a tick or from an explicit API call.
"""

import asyncio
import contextlib
import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import replace
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Optional

from gridbot.broker.models import OrderSide, OrderType, VirtualOrder
from gridbot.broker.ports import MarketDataSource, NotificationSink, ReportSink
from gridbot.config import PaperConfig, parse_symbol
from gridbot.errors import AlreadyRunningError, ConfigError, InsufficientBalanceError
from gridbot.events import (
    BALANCE_UPDATED,
    ERROR,
    INSUFFICIENT_BALANCE,
    ORDER_CANCELED,
    ORDER_CREATED,
    ORDER_FILLED,
    PROFIT_REALIZED,
    STATUS_UPDATE,
    EventBus,
)
from gridbot.paper.ledger import VirtualLedger
from gridbot.paper.models import PerformanceSnapshot, RealizedTrade, StatusSnapshot
from gridbot.risk.drawdown import DrawdownTracker
from gridbot.strategy.engine import StrategyEngine
from gridbot.strategy.indicators import validate_candles
from gridbot.strategy.models import Candle, GridLevelStatus, TradeSignals

logger = logging.getLogger("gridbot")


def _utc_iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def _resolve_commission(paper_config: PaperConfig, engine: StrategyEngine) -> float:
    """The ledger charges the same rate the engine books profits with."""
    strategy_rate = engine.strategy_config.commission_rate
    paper_rate = paper_config.commission_rate
    if paper_rate is not None and not math.isclose(paper_rate, strategy_rate, abs_tol=1e-12):
        raise ConfigError(
            f"Paper commission_rate {paper_rate} differs from the strategy's "
            f"commission_rate {strategy_rate}"
        )
    return strategy_rate


class TradingSimulator:
    """Paper trader for every symbol the engine is configured with.

    Args:
        engine: Strategy engine; its symbol configs define what is traded.
        market_data: Historical fetch and bar subscription.
        paper_config: Ledger settings.
        report_sink: Optional destination for reports and the transaction log.
        notifier: Optional notification sink.
        mode: Label written into reports (``"paper"`` or ``"backtest"``).
        clock: Wall-clock source in epoch seconds, for runtime and report times.
    """

    def __init__(
        self,
        engine: StrategyEngine,
        market_data: MarketDataSource,
        paper_config: PaperConfig,
        symbols: list[str],
        report_sink: Optional[ReportSink] = None,
        notifier: Optional[NotificationSink] = None,
        mode: str = "paper",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._engine = engine
        self._market_data = market_data
        self._config = paper_config
        self._symbols = list(symbols)
        self._report_sink = report_sink
        self._notifier = notifier
        self._mode = mode
        self._clock = clock
        self._commission_rate = _resolve_commission(paper_config, engine)

        self.events = EventBus()
        self._ledger = VirtualLedger({paper_config.currency: paper_config.initial_balance})
        self._drawdown = DrawdownTracker(paper_config.initial_balance)
        self._orders: dict[int, VirtualOrder] = {}  # open (NEW) orders only
        self._closed_orders: deque = deque(maxlen=paper_config.order_history_limit)
        self._next_order_id = 1
        self._realized: list[RealizedTrade] = []
        self._history: dict[str, deque] = {}
        self._last_prices: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._subscriptions: dict[str, Any] = {}
        self._report_task: Optional[asyncio.Task] = None
        self._running = False
        self._start_time: Optional[float] = None
        self._stop_time: Optional[float] = None

    # ── Properties ───────────────────────────────────────────────────────

    @property
    def engine(self) -> StrategyEngine:
        return self._engine

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def start_time(self) -> Optional[float]:
        return self._start_time

    @property
    def mode(self) -> str:
        return self._mode

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Initialize every symbol from history and subscribe to bars.

        On any failure the subscriptions made so far are released, the
        simulator is left stopped, and the error is re-raised.
        """
        if self._running:
            raise AlreadyRunningError("Trading simulator is already running")

        logger.info(
            "Starting %s trading for %s with %.2f %s",
            self._mode, ", ".join(self._symbols),
            self._config.initial_balance, self._config.currency,
        )
        try:
            for symbol in self._symbols:
                candles = await self._market_data.fetch_historical(
                    symbol, self._config.history_limit,
                )
                self._engine.initialize_strategy(symbol, candles)
                self._history[symbol] = deque(candles, maxlen=self._config.history_limit)
                if candles:
                    self._last_prices[symbol] = candles[-1].close

            for symbol in self._symbols:
                handle = await self._market_data.subscribe(
                    symbol, partial(self.handle_bar, symbol),
                )
                self._subscriptions[symbol] = handle

            if self._config.enable_reporting and self._report_sink is not None:
                self._report_task = asyncio.create_task(self._report_loop())
        except Exception as exc:
            logger.error("Failed to start %s trading: %s", self._mode, exc)
            await self._unsubscribe_all()
            await self._cancel_reporting()
            self._running = False
            self.events.emit(ERROR, exc)
            await self._notify_error(exc, "start")
            raise

        self._running = True
        self._start_time = self._clock()
        self._stop_time = None
        self._update_equity()
        await self._notify(
            f"{self._mode.capitalize()} trading started for {', '.join(self._symbols)}",
            "info",
        )

    async def stop(self) -> Optional[dict]:
        """Stop accepting bars and write the final report.

        Idempotent: returns the final report, or ``None`` when already
        stopped.
        """
        if not self._running:
            return None
        self._running = False
        self._stop_time = self._clock()

        await self._unsubscribe_all()
        await self._cancel_reporting()
        report = await self.generate_final_report()
        logger.info(
            "%s trading stopped: %d trades, net %.2f %s",
            self._mode.capitalize(), report["total_trades"],
            report["total_profit"], self._config.currency,
        )
        return report

    async def destroy(self) -> None:
        await self.stop()
        self.events.clear()

    async def _unsubscribe_all(self) -> None:
        for symbol, handle in list(self._subscriptions.items()):
            try:
                await self._market_data.unsubscribe(handle)
            except Exception as exc:
                logger.warning("Failed to unsubscribe %s: %s", symbol, exc)
        self._subscriptions.clear()

    async def _cancel_reporting(self) -> None:
        task, self._report_task = self._report_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _report_loop(self) -> None:
        interval = self._config.reporting_interval_minutes * 60
        while True:
            await asyncio.sleep(interval)
            try:
                await self.generate_status_report()
            except Exception as exc:
                logger.error("Periodic status report failed: %s", exc)

    # ── Tick handling ────────────────────────────────────────────────────

    async def handle_bar(self, symbol: str, candle: Candle) -> None:
        """Process one closed bar for *symbol*.

        Bars arriving while stopped are dropped.  Errors are logged and
        emitted as ``error`` events; they never escape to the data source.
        """
        if not self._running:
            logger.debug("Dropping %s bar at %d: simulator not running", symbol, candle.time)
            return

        async with self._locks[symbol]:
            if not self._running:
                return
            try:
                await self._process_bar(symbol, candle)
            except Exception as exc:
                logger.error("Error processing %s bar at %d: %s", symbol, candle.time, exc)
                self.events.emit(ERROR, exc)
                await self._notify_error(exc, f"bar {symbol}")

    async def _process_bar(self, symbol: str, candle: Candle) -> None:
        validate_candles([candle])
        history = self._history.setdefault(
            symbol, deque(maxlen=self._config.history_limit),
        )
        if history and candle.time <= history[-1].time:
            logger.warning(
                "Ignoring out-of-order %s bar at %d (last %d)",
                symbol, candle.time, history[-1].time,
            )
            return

        history.append(candle)
        self._last_prices[symbol] = candle.close
        self._engine.update_state(symbol, candle, list(history))

        await self.process_virtual_orders(symbol, candle)
        signals = self._engine.get_trade_signals(symbol)
        await self._execute_signals(symbol, signals, candle)
        self._update_equity()

    async def _execute_signals(
        self, symbol: str, signals: TradeSignals, candle: Candle,
    ) -> None:
        for signal in signals.buy:
            if self._has_open_order(symbol, signal.grid_level.index, OrderSide.BUY):
                continue
            await self.create_virtual_order(
                symbol, OrderSide.BUY, signal.price, signal.quantity,
                grid_level_index=signal.grid_level.index, timestamp=candle.time,
            )
        for signal in signals.sell:
            if self._has_open_order(symbol, signal.grid_level.index, OrderSide.SELL):
                continue
            await self.create_virtual_order(
                symbol, OrderSide.SELL, signal.price, signal.quantity,
                grid_level_index=signal.grid_level.index, timestamp=candle.time,
            )

    def _has_open_order(self, symbol: str, grid_index: int, side: OrderSide) -> bool:
        return any(
            o.symbol == symbol
            and o.side is side
            and o.grid_level_index == grid_index
            for o in self._orders.values()
        )

    # ── Orders ───────────────────────────────────────────────────────────

    def _assets(self, symbol: str) -> tuple[str, str]:
        symbol_cfg = self._engine.symbol_config(symbol)
        if symbol_cfg is not None:
            return symbol_cfg.assets
        return parse_symbol(symbol)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def create_virtual_order(
        self,
        symbol: str,
        side: OrderSide,
        price: float,
        quantity: float,
        grid_level_index: Optional[int] = None,
        order_type: OrderType = OrderType.LIMIT,
        timestamp: Optional[int] = None,
    ) -> Optional[VirtualOrder]:
        """Record a ``NEW`` order after checking parameters and balance.

        Returns ``None`` (with a warning) for invalid parameters or an
        unaffordable order.  Balances are not touched until fill time.
        """
        if not (math.isfinite(price) and math.isfinite(quantity)) or price <= 0 or quantity <= 0:
            logger.warning(
                "Rejected %s %s order: invalid price=%s quantity=%s",
                symbol, side.value, price, quantity,
            )
            return None
        try:
            base, quote = self._assets(symbol)
        except ConfigError as exc:
            logger.warning("Rejected %s order: %s", symbol, exc)
            return None

        symbol_cfg = self._engine.symbol_config(symbol)
        if symbol_cfg is not None:
            quantity = round(quantity, symbol_cfg.quantity_precision)
            if quantity <= 0:
                logger.warning("Rejected %s order: quantity rounds to zero", symbol)
                return None

        if side is OrderSide.BUY:
            asset = quote
            required = price * quantity * (1 + self._commission_rate)
        else:
            asset = base
            required = quantity
        if not self._ledger.can_afford(asset, required):
            available = self._ledger.balance(asset)
            logger.warning(
                "Insufficient %s for %s %s: need %.8f, have %.8f",
                asset, symbol, side.value, required, available,
            )
            self.events.emit(INSUFFICIENT_BALANCE, {
                "symbol": symbol,
                "side": side.value,
                "asset": asset,
                "required": required,
                "available": available,
            })
            return None

        order = VirtualOrder(
            id=self._next_order_id,
            symbol=symbol,
            side=side,
            type=order_type,
            price=price,
            quantity=quantity,
            created_at=timestamp if timestamp is not None else self._now_ms(),
            grid_level_index=grid_level_index,
        )
        self._next_order_id += 1
        self._orders[order.id] = order

        logger.info(
            "Created virtual %s order %d for %s: %.8f @ %.8f (grid %s)",
            side.value, order.id, symbol, quantity, price, grid_level_index,
        )
        self.events.emit(ORDER_CREATED, replace(order))
        await self._notify(
            f"Order created: {side.value} {quantity:.8f} {symbol} @ {price:.8f}", "info",
        )
        return order

    async def process_virtual_orders(self, symbol: str, bar: Candle) -> list[VirtualOrder]:
        """Fill every open order for *symbol* that *bar* reaches.

        Orders are evaluated in ascending id order.  Returns the orders
        filled in this pass.
        """
        filled: list[VirtualOrder] = []
        for order_id in sorted(self._orders):
            order = self._orders.get(order_id)
            if order is None or order.symbol != symbol:
                continue
            if order.side is OrderSide.BUY and bar.low > order.price:
                continue
            if order.side is OrderSide.SELL and bar.high < order.price:
                continue
            if await self.fill_order(order, bar):
                filled.append(order)
        return filled

    async def fill_order(self, order: VirtualOrder, bar: Candle) -> bool:
        """Execute *order* at its limit price (plus slippage).

        Applies the ledger change atomically and reports the fill to the
        engine.  An order that can no longer be afforded, or whose grid
        level is no longer in the expected state, is canceled instead.
        """
        base, quote = self._assets(order.symbol)
        rate = self._commission_rate
        slippage = order.price * self._config.slippage_rate
        if order.side is OrderSide.BUY:
            fill_price = order.price + slippage
            commission = fill_price * order.quantity * rate
            changes = {quote: -(fill_price * order.quantity + commission), base: order.quantity}
        else:
            fill_price = order.price - slippage
            commission = fill_price * order.quantity * rate
            changes = {base: -order.quantity, quote: fill_price * order.quantity - commission}

        if not self._grid_accepts_fill(order):
            logger.warning(
                "Canceling order %d: grid level %s of %s no longer expects a %s",
                order.id, order.grid_level_index, order.symbol, order.side.value,
            )
            self._cancel(order, bar.time)
            return False

        try:
            self._ledger.apply(changes)
        except InsufficientBalanceError as exc:
            logger.warning("Canceling order %d at fill time: %s", order.id, exc)
            self.events.emit(INSUFFICIENT_BALANCE, {
                "symbol": order.symbol,
                "side": order.side.value,
                "asset": exc.asset,
                "required": exc.required,
                "available": exc.available,
            })
            self._cancel(order, bar.time)
            return False

        order.fill(fill_price, bar.time)
        self._close(order)
        self._update_equity()

        trade_result = None
        if order.grid_level_index is not None:
            if order.side is OrderSide.BUY:
                self._engine.mark_grid_level_filled(
                    order.symbol, order.grid_level_index, fill_price,
                    order.quantity, order.id, timestamp=bar.time,
                )
            else:
                trade_result = self._engine.process_completed_trade(
                    order.symbol, order.grid_level_index, fill_price, order.quantity,
                )

        logger.info(
            "Filled virtual %s order %d for %s: %.8f @ %.8f (fee %.8f)",
            order.side.value, order.id, order.symbol, order.quantity,
            fill_price, commission,
        )
        self.events.emit(ORDER_FILLED, replace(order))
        self.events.emit(BALANCE_UPDATED, self._ledger.balances())

        if trade_result is not None:
            realized = RealizedTrade(
                symbol=order.symbol,
                grid_index=trade_result.grid_index,
                entry_price=trade_result.entry_price,
                exit_price=trade_result.sell_price,
                quantity=trade_result.quantity,
                commission=trade_result.commission,
                net_profit=trade_result.net_profit,
                closed_at=bar.time,
            )
            self._realized.append(realized)
            self.events.emit(PROFIT_REALIZED, realized)

        self._log_transaction(order, commission)
        await self._notify_trade(order, trade_result.net_profit if trade_result else None)
        return True

    def _grid_accepts_fill(self, order: VirtualOrder) -> bool:
        if order.grid_level_index is None:
            return True
        if order.side is OrderSide.SELL:
            return self._engine.has_open_position(order.symbol, order.grid_level_index)
        level = self._engine.get_grid_level(order.symbol, order.grid_level_index)
        return level is not None and level.status is GridLevelStatus.PENDING

    def _cancel(self, order: VirtualOrder, timestamp: int) -> None:
        order.cancel(timestamp)
        self._close(order)
        self.events.emit(ORDER_CANCELED, replace(order))

    def _close(self, order: VirtualOrder) -> None:
        # Settled orders leave the open map; only the most recent are kept.
        self._orders.pop(order.id, None)
        self._closed_orders.append(order)

    def cancel_order(self, order_id: int) -> bool:
        """Cancel an open order.  Returns ``False`` if it is unknown or closed."""
        order = self._orders.get(order_id)
        if order is None:
            return False
        self._cancel(order, self._now_ms())
        logger.info("Canceled virtual order %d for %s", order_id, order.symbol)
        return True

    def cancel_all(self, symbol: Optional[str] = None) -> int:
        open_ids = [
            o.id for o in self._orders.values()
            if symbol is None or o.symbol == symbol
        ]
        return sum(1 for order_id in open_ids if self.cancel_order(order_id))

    # ── Queries ──────────────────────────────────────────────────────────

    def get_balances(self) -> dict[str, float]:
        return self._ledger.balances()

    def get_orders(self) -> list[VirtualOrder]:
        """Open orders plus the retained filled/canceled ones, by id."""
        orders = list(self._closed_orders) + list(self._orders.values())
        return [replace(o) for o in sorted(orders, key=lambda o: o.id)]

    def get_open_orders(self) -> list[VirtualOrder]:
        return [replace(self._orders[i]) for i in sorted(self._orders)]

    def get_realized_trades(self) -> list[RealizedTrade]:
        return list(self._realized)

    def equity(self) -> float:
        """Quote balance plus base holdings marked at the last close."""
        currency = self._config.currency
        total = self._ledger.balance(currency)
        for symbol, price in self._last_prices.items():
            try:
                base, quote = self._assets(symbol)
            except ConfigError:
                continue
            if quote == currency:
                total += self._ledger.balance(base) * price
        return total

    def _update_equity(self) -> None:
        self._drawdown.update(self.equity())

    def get_performance_summary(self) -> PerformanceSnapshot:
        total = len(self._realized)
        winners = sum(1 for t in self._realized if t.net_profit > 0)
        if self._start_time is None:
            runtime = 0.0
        else:
            end = self._stop_time if self._stop_time is not None else self._clock()
            runtime = max(0.0, end - self._start_time)
        return PerformanceSnapshot(
            total_trades=total,
            winning_trades=winners,
            total_profit=sum(t.net_profit for t in self._realized),
            max_drawdown=self._drawdown.max_drawdown_pct,
            win_rate=winners / total * 100 if total else 0.0,
            runtime=runtime,
            equity=self.equity(),
        )

    def get_status_snapshot(self) -> StatusSnapshot:
        strategies = {}
        for symbol in self._engine.get_active_symbols():
            metrics = self._engine.get_metrics(symbol)
            state = self._engine.get_strategy_state(symbol)
            strategies[symbol] = {
                "current_price": state.current_price,
                "ema200": state.ema200,
                "grid_interval": state.grid_interval,
                "grid_levels": len(state.grid_levels),
                "open_positions": len(state.open_positions),
                "eligible": metrics.is_eligible,
                "total_trades": metrics.total_trades,
                "total_profit": metrics.total_profit,
            }
        return StatusSnapshot(
            time=_utc_iso(self._clock()),
            mode=self._mode,
            balances=self.get_balances(),
            open_orders=[o.to_dict() for o in self.get_open_orders()],
            performance=self.get_performance_summary(),
            strategies=strategies,
        )

    # ── Reports & notifications ──────────────────────────────────────────

    async def generate_status_report(self) -> StatusSnapshot:
        snapshot = self.get_status_snapshot()
        report = snapshot.to_dict()
        if self._report_sink is not None:
            try:
                self._report_sink.save_status_report(report)
            except Exception as exc:
                logger.error("Failed to save status report: %s", exc)
        self.events.emit(STATUS_UPDATE, snapshot)
        if self._config.enable_notifications and self._notifier is not None:
            try:
                await self._notifier.notify_status(report)
            except Exception as exc:
                logger.warning("Status notification failed: %s", exc)
        logger.info(
            "Status: equity=%.2f trades=%d drawdown=%.2f%%",
            snapshot.performance.equity, snapshot.performance.total_trades,
            snapshot.performance.max_drawdown,
        )
        return snapshot

    async def generate_final_report(self) -> dict:
        performance = self.get_performance_summary()
        initial = self._config.initial_balance
        per_symbol = {}
        for symbol in self._symbols:
            trades = [t for t in self._realized if t.symbol == symbol]
            wins = sum(1 for t in trades if t.net_profit > 0)
            per_symbol[symbol] = {
                "total_trades": len(trades),
                "winning_trades": wins,
                "losing_trades": len(trades) - wins,
                "total_profit": sum(t.net_profit for t in trades),
                "win_rate": wins / len(trades) * 100 if trades else 0.0,
            }

        report = {
            "mode": self._mode,
            "start_time": _utc_iso(self._start_time) if self._start_time else None,
            "end_time": _utc_iso(self._stop_time or self._clock()),
            "duration_seconds": performance.runtime,
            "initial_balance": initial,
            "final_equity": performance.equity,
            "total_profit": performance.total_profit,
            "total_profit_pct": performance.total_profit / initial * 100,
            "total_trades": performance.total_trades,
            "win_rate": performance.win_rate,
            "max_drawdown_pct": performance.max_drawdown,
            "final_balances": self.get_balances(),
            "symbols": per_symbol,
            "trades": [
                {
                    "symbol": t.symbol,
                    "grid_index": t.grid_index,
                    "entry_price": t.entry_price,
                    "exit_price": t.exit_price,
                    "quantity": t.quantity,
                    "commission": t.commission,
                    "net_profit": t.net_profit,
                    "closed_at": t.closed_at,
                }
                for t in self._realized
            ],
        }
        if self._report_sink is not None:
            try:
                self._report_sink.save_final_report(report)
            except Exception as exc:
                logger.error("Failed to save final report: %s", exc)
        await self._notify(
            f"{self._mode.capitalize()} trading completed: "
            f"{performance.total_trades} trades, "
            f"profit {performance.total_profit:.2f} {self._config.currency}, "
            f"win rate {performance.win_rate:.2f}%, "
            f"max drawdown {performance.max_drawdown:.2f}%",
            "success",
        )
        return report

    def _log_transaction(self, order: VirtualOrder, commission: float) -> None:
        if self._report_sink is None:
            return
        try:
            self._report_sink.log_transaction({
                "time": order.updated_at,
                "order_id": order.id,
                "symbol": order.symbol,
                "side": order.side.value,
                "price": order.fill_price,
                "quantity": order.quantity,
                "commission": commission,
                "grid_level_index": order.grid_level_index,
                "mode": self._mode,
            })
        except Exception as exc:
            logger.error("Failed to log transaction for order %d: %s", order.id, exc)

    async def _notify(self, message: str, severity: str) -> None:
        if not self._config.enable_notifications or self._notifier is None:
            return
        try:
            await self._notifier.notify(message, severity)
        except Exception as exc:
            logger.warning("Notification failed: %s", exc)

    async def _notify_trade(self, order: VirtualOrder, net_profit: Optional[float]) -> None:
        if not self._config.enable_notifications or self._notifier is None:
            return
        try:
            await self._notifier.notify_trade({
                "mode": self._mode,
                "symbol": order.symbol,
                "side": order.side.value,
                "price": order.fill_price,
                "quantity": order.quantity,
                "net_profit": net_profit,
            })
        except Exception as exc:
            logger.warning("Trade notification failed: %s", exc)

    async def _notify_error(self, error: Exception, context: str) -> None:
        if not self._config.enable_notifications or self._notifier is None:
            return
        try:
            await self._notifier.notify_error(error, context)
        except Exception as exc:
            logger.warning("Error notification failed: %s", exc)
