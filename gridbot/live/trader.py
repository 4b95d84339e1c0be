"""GridBot — Live trader.

Same signal contract as paper trading, but orders go to an exchange
client.  Each closed bar updates the strategy, polls the status of the
orders placed so far (reporting fills back to the engine), then places
new limit orders for fresh signals after checking exchange balances.
"""

import asyncio
import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional

from gridbot.broker.models import OrderSide, OrderStatus
from gridbot.broker.ports import ExchangeClient, MarketDataSource, NotificationSink, ReportSink
from gridbot.errors import (
    AlreadyRunningError,
    ConfigError,
    InvalidOrderParametersError,
    NotRunningError,
)
from gridbot.strategy.engine import StrategyEngine
from gridbot.strategy.indicators import validate_candles
from gridbot.strategy.models import Candle, SignalSide, TradingSignal

logger = logging.getLogger("gridbot")


@dataclass
class TrackedOrder:
    """An exchange order placed for a grid level and not yet settled."""

    order_id: str
    symbol: str
    side: OrderSide
    price: float
    quantity: float
    grid_level_index: int
    created_at: int


class LiveTrader:
    """Runs the grid strategy against a real exchange.

    Args:
        engine: Strategy engine.
        market_data: Historical fetch and bar subscription.
        exchange: Order placement, status queries and balances.
        symbols: Pairs to trade.
        commission_rate: Fee rate used in balance checks; defaults to the
            strategy's rate and must match it when given.
        history_limit: Rolling candle window handed to the engine.
    """

    def __init__(
        self,
        engine: StrategyEngine,
        market_data: MarketDataSource,
        exchange: ExchangeClient,
        symbols: list[str],
        commission_rate: Optional[float] = None,
        history_limit: int = 500,
        report_sink: Optional[ReportSink] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._engine = engine
        self._market_data = market_data
        self._exchange = exchange
        self._symbols = list(symbols)
        strategy_rate = engine.strategy_config.commission_rate
        if commission_rate is not None and not math.isclose(
            commission_rate, strategy_rate, abs_tol=1e-12,
        ):
            raise ConfigError(
                f"Live commission_rate {commission_rate} differs from the strategy's "
                f"commission_rate {strategy_rate}"
            )
        self._commission_rate = strategy_rate
        self._history_limit = history_limit
        self._report_sink = report_sink
        self._notifier = notifier
        self._clock = clock

        self._history: dict[str, deque] = {}
        self._orders: dict[str, TrackedOrder] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._subscriptions: dict[str, Any] = {}
        self._running = False
        self._paused = False
        self._start_time: Optional[float] = None
        self._stats = {
            "orders_placed": 0,
            "orders_filled": 0,
            "orders_failed": 0,
            "completed_trades": 0,
            "total_profit": 0.0,
        }

    @property
    def engine(self) -> StrategyEngine:
        return self._engine

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            raise AlreadyRunningError("Live trading is already running")

        logger.warning("Starting LIVE trading for %s", ", ".join(self._symbols))
        try:
            balances = await self._exchange.get_balances()
            logger.info("Exchange balances: %s", balances)
            for symbol in self._symbols:
                candles = await self._market_data.fetch_historical(symbol, self._history_limit)
                self._engine.initialize_strategy(symbol, candles)
                self._history[symbol] = deque(candles, maxlen=self._history_limit)
            for symbol in self._symbols:
                self._subscriptions[symbol] = await self._market_data.subscribe(
                    symbol, partial(self.handle_bar, symbol),
                )
        except Exception as exc:
            logger.error("Failed to start live trading: %s", exc)
            await self._unsubscribe_all()
            self._running = False
            await self._notify(f"Failed to start live trading: {exc}", "error")
            raise

        self._running = True
        self._paused = False
        self._start_time = self._clock()
        await self._notify("LIVE trading started", "warning")

    async def stop(self) -> None:
        """Stop trading and cancel open exchange orders.  Idempotent."""
        if not self._running:
            return
        self._running = False

        await self._unsubscribe_all()
        for symbol in self._symbols:
            try:
                await self._exchange.cancel_all(symbol)
            except Exception as exc:
                logger.error("Failed to cancel open orders for %s: %s", symbol, exc)
        self._orders.clear()

        status = self.get_status()
        if self._report_sink is not None:
            try:
                self._report_sink.save_final_report({
                    "mode": "live",
                    "total_trades": status["stats"]["completed_trades"],
                    "total_profit": status["stats"]["total_profit"],
                    **status,
                })
            except Exception as exc:
                logger.error("Failed to save final live report: %s", exc)
        await self._notify("LIVE trading stopped", "info")
        logger.info("Live trading stopped: %s", status["stats"])

    async def pause(self) -> None:
        """Keep monitoring open orders but stop placing new ones."""
        if not self._running:
            raise NotRunningError("Cannot pause: live trading is not running")
        if self._paused:
            return
        self._paused = True
        logger.info("Live trading paused")
        await self._notify("Live trading paused, no new orders will be created", "warning")

    async def resume(self) -> None:
        if not self._running:
            raise NotRunningError("Cannot resume: live trading is not running")
        if not self._paused:
            return
        self._paused = False
        logger.info("Live trading resumed")
        await self._notify("Live trading resumed", "info")

    async def _unsubscribe_all(self) -> None:
        for symbol, handle in list(self._subscriptions.items()):
            try:
                await self._market_data.unsubscribe(handle)
            except Exception as exc:
                logger.warning("Failed to unsubscribe %s: %s", symbol, exc)
        self._subscriptions.clear()

    # ── Tick handling ────────────────────────────────────────────────────

    async def handle_bar(self, symbol: str, candle: Candle) -> None:
        if not self._running:
            return
        async with self._locks[symbol]:
            if not self._running:
                return
            try:
                validate_candles([candle])
                history = self._history.setdefault(symbol, deque(maxlen=self._history_limit))
                if history and candle.time <= history[-1].time:
                    return
                history.append(candle)
                self._engine.update_state(symbol, candle, list(history))

                await self.poll_orders(symbol)
                if self._paused:
                    return

                signals = self._engine.get_trade_signals(symbol)
                for signal in signals.buy + signals.sell:
                    await self._execute_signal(signal, candle.time)
            except Exception as exc:
                logger.error("Error processing live %s bar at %d: %s", symbol, candle.time, exc)
                await self._notify_error(exc, f"bar {symbol}")

    async def poll_orders(self, symbol: str) -> None:
        """Query every tracked order for *symbol* and settle finished ones."""
        for order_id, tracked in list(self._orders.items()):
            if tracked.symbol != symbol:
                continue
            try:
                report = await self._exchange.query_order(symbol, order_id)
            except Exception as exc:
                logger.warning("Failed to query order %s: %s", order_id, exc)
                continue

            if report.status is OrderStatus.NEW:
                continue
            del self._orders[order_id]
            if report.status is OrderStatus.CANCELED:
                logger.info("Exchange canceled order %s for %s", order_id, symbol)
                continue

            fill_price = report.fill_price or tracked.price
            quantity = report.filled_quantity or tracked.quantity
            self._stats["orders_filled"] += 1
            if tracked.side is OrderSide.BUY:
                self._engine.mark_grid_level_filled(
                    symbol, tracked.grid_level_index, fill_price, quantity,
                    order_id,
                )
            else:
                result = self._engine.process_completed_trade(
                    symbol, tracked.grid_level_index, fill_price, quantity,
                )
                if result is not None:
                    self._stats["completed_trades"] += 1
                    self._stats["total_profit"] += result.net_profit
            self._log_transaction(tracked, fill_price, quantity)
            if self._notifier is not None:
                try:
                    await self._notifier.notify_trade({
                        "mode": "live",
                        "symbol": symbol,
                        "side": tracked.side.value,
                        "price": fill_price,
                        "quantity": quantity,
                    })
                except Exception as exc:
                    logger.warning("Trade notification failed: %s", exc)

    async def _execute_signal(self, signal: TradingSignal, timestamp: int) -> Optional[str]:
        side = OrderSide.BUY if signal.side is SignalSide.BUY else OrderSide.SELL
        index = signal.grid_level.index
        symbol = signal.symbol
        if any(
            o.symbol == symbol and o.side is side and o.grid_level_index == index
            for o in self._orders.values()
        ):
            return None
        try:
            price, quantity = self._order_params(signal)
        except InvalidOrderParametersError as exc:
            logger.warning("Skipping %s %s signal: %s", symbol, side.value, exc)
            return None

        base, quote = self._engine.symbol_config(symbol).assets
        balances = await self._exchange.get_balances()
        if side is OrderSide.BUY:
            asset, required = quote, price * quantity * (1 + self._commission_rate)
        else:
            asset, required = base, quantity
        available = balances.get(asset, 0.0)
        if available < required:
            logger.warning(
                "Insufficient %s for live %s %s: need %.8f, have %.8f",
                asset, symbol, side.value, required, available,
            )
            return None

        try:
            order_id = await self._exchange.place_limit_order(symbol, side, price, quantity)
        except Exception as exc:
            self._stats["orders_failed"] += 1
            logger.error("Failed to place %s order for %s: %s", side.value, symbol, exc)
            await self._notify_error(exc, f"{side.value} {symbol}")
            return None

        self._orders[order_id] = TrackedOrder(
            order_id=order_id,
            symbol=symbol,
            side=side,
            price=price,
            quantity=quantity,
            grid_level_index=index,
            created_at=timestamp,
        )
        self._stats["orders_placed"] += 1
        logger.info(
            "Placed live %s order %s: %.8f %s @ %.8f (grid %d)",
            side.value, order_id, quantity, symbol, price, index,
        )
        await self._notify(
            f"LIVE {side.value} order placed: {quantity:.8f} {symbol} @ {price:.8f}", "info",
        )
        return order_id

    def _order_params(self, signal: TradingSignal) -> tuple[float, float]:
        """Exchange-rounded ``(price, quantity)`` for *signal*.

        Raises:
            InvalidOrderParametersError: a non-finite value, or a price or
                quantity that is not positive after rounding.
        """
        if not (math.isfinite(signal.price) and math.isfinite(signal.quantity)):
            raise InvalidOrderParametersError(
                f"non-finite price {signal.price} or quantity {signal.quantity}"
            )
        symbol_cfg = self._engine.symbol_config(signal.symbol)
        price = round(signal.price, symbol_cfg.price_precision)
        quantity = round(signal.quantity, symbol_cfg.quantity_precision)
        if price <= 0 or quantity <= 0:
            raise InvalidOrderParametersError(
                f"price {price} and quantity {quantity} must be positive"
            )
        return price, quantity

    # ── Status ───────────────────────────────────────────────────────────

    def get_open_orders(self) -> list[TrackedOrder]:
        return list(self._orders.values())

    def get_status(self) -> dict:
        runtime = self._clock() - self._start_time if self._start_time else 0.0
        return {
            "running": self._running,
            "paused": self._paused,
            "runtime": runtime,
            "active_orders": len(self._orders),
            "stats": dict(self._stats),
        }

    def _log_transaction(self, tracked: TrackedOrder, price: float, quantity: float) -> None:
        if self._report_sink is None:
            return
        try:
            self._report_sink.log_transaction({
                "mode": "live",
                "time": int(self._clock() * 1000),
                "order_id": tracked.order_id,
                "symbol": tracked.symbol,
                "side": tracked.side.value,
                "price": price,
                "quantity": quantity,
                "commission": price * quantity * self._commission_rate,
                "grid_level_index": tracked.grid_level_index,
            })
        except Exception as exc:
            logger.error("Failed to log live transaction: %s", exc)

    async def _notify(self, message: str, severity: str) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(message, severity)
        except Exception as exc:
            logger.warning("Notification failed: %s", exc)

    async def _notify_error(self, error: Exception, context: str) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify_error(error, context)
        except Exception as exc:
            logger.warning("Error notification failed: %s", exc)
