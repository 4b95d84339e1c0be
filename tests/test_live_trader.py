"""Tests for gridbot.live — live trader against a fake exchange client."""

import pytest

from gridbot.broker.models import ExchangeOrder, OrderSide, OrderStatus
from gridbot.broker.ports import ExchangeClient
from gridbot.broker.replay import ReplayMarketData
from gridbot.config import StrategyConfig, SymbolConfig
from gridbot.errors import AlreadyRunningError, ConfigError, NotRunningError
from gridbot.live.trader import LiveTrader
from gridbot.strategy.engine import StrategyEngine
from gridbot.strategy.models import Candle

SYMBOL = "ETHUSDT"
_MINUTE = 60_000


class _FakeExchange:
    """In-memory exchange: orders stay NEW until the test fills them."""

    def __init__(self, balances=None):
        self.balances = balances if balances is not None else {"USDT": 1_000.0}
        self.orders: dict[str, ExchangeOrder] = {}
        self.canceled: list[str] = []

    async def place_limit_order(self, symbol, side, price, quantity):
        order_id = f"ex-{len(self.orders) + 1}"
        self.orders[order_id] = ExchangeOrder(
            order_id=order_id, symbol=symbol, side=side, price=price,
            quantity=quantity, status=OrderStatus.NEW,
        )
        return order_id

    async def query_order(self, symbol, order_id):
        return self.orders[order_id]

    async def cancel_all(self, symbol):
        self.canceled.append(symbol)

    async def get_balances(self):
        return dict(self.balances)

    def fill(self, order_id, price=None):
        order = self.orders[order_id]
        self.orders[order_id] = ExchangeOrder(
            order_id=order.order_id, symbol=order.symbol, side=order.side,
            price=order.price, quantity=order.quantity, status=OrderStatus.FILLED,
            filled_quantity=order.quantity, fill_price=price or order.price,
        )


# ── Helpers ──────────────────────────────────────────────────────────────


def _history():
    candles = []
    for i in range(60):
        o, c = (100.0, 101.0) if i % 2 == 0 else (101.0, 100.0)
        candles.append(Candle(time=i * _MINUTE, open=o, high=101.5, low=99.5, close=c, volume=1.0))
    return candles


_DIP = Candle(time=60 * _MINUTE, open=100.0, high=100.0, low=99.6, close=99.7)
_RECOVER = Candle(time=61 * _MINUTE, open=99.7, high=99.9, low=99.5, close=99.8)
_RALLY = Candle(time=62 * _MINUTE, open=99.8, high=100.9, low=99.8, close=100.8)


def _make_engine(base_grid_size=100.0, **symbol_overrides):
    return StrategyEngine(
        StrategyConfig(
            grid_levels_count=10,
            bar_count_for_volatility=50,
            ema_period=20,
            base_grid_size=base_grid_size,
        ),
        [SymbolConfig(pair=SYMBOL, min_daily_bar_diff_threshold=0.1, **symbol_overrides)],
    )


def _make_trader(exchange=None, engine=None):
    engine = engine or _make_engine()
    exchange = exchange or _FakeExchange()
    trader = LiveTrader(
        engine=engine,
        market_data=ReplayMarketData({SYMBOL: _history()}, warmup=60),
        exchange=exchange,
        symbols=[SYMBOL],
        history_limit=60,
        clock=lambda: 1_700_000_000.0,
    )
    return trader, exchange


# ── Tests ────────────────────────────────────────────────────────────────


def test_fake_exchange_matches_protocol():
    assert isinstance(_FakeExchange(), ExchangeClient)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_double_start(self):
        trader, _ = _make_trader()
        await trader.start()
        assert trader.is_running
        with pytest.raises(AlreadyRunningError):
            await trader.start()

    @pytest.mark.asyncio
    async def test_stop_cancels_exchange_orders(self):
        trader, exchange = _make_trader()
        await trader.start()
        await trader.handle_bar(SYMBOL, _DIP)

        await trader.stop()

        assert exchange.canceled == [SYMBOL]
        assert trader.get_open_orders() == []
        assert trader.is_running is False
        await trader.stop()
        assert exchange.canceled == [SYMBOL]

    @pytest.mark.asyncio
    async def test_pause_requires_running(self):
        trader, _ = _make_trader()
        with pytest.raises(NotRunningError):
            await trader.pause()
        with pytest.raises(NotRunningError):
            await trader.resume()


class TestOrders:
    @pytest.mark.asyncio
    async def test_signal_places_limit_order(self):
        trader, exchange = _make_trader()
        await trader.start()

        await trader.handle_bar(SYMBOL, _DIP)

        assert list(exchange.orders) == ["ex-1"]
        placed = exchange.orders["ex-1"]
        assert placed.side is OrderSide.BUY
        assert placed.price == pytest.approx(99.7)
        assert placed.quantity == pytest.approx(round(100.0 / 99.7, 8))
        tracked = trader.get_open_orders()
        assert [t.grid_level_index for t in tracked] == [4]

    @pytest.mark.asyncio
    async def test_fill_reported_to_engine(self):
        trader, exchange = _make_trader()
        await trader.start()
        await trader.handle_bar(SYMBOL, _DIP)

        exchange.fill("ex-1")
        await trader.handle_bar(SYMBOL, _RECOVER)

        assert trader.engine.has_open_position(SYMBOL, 4)
        position = trader.engine.get_strategy_state(SYMBOL).open_positions[4]
        assert position.order_id == "ex-1"
        assert trader.get_open_orders() == []
        assert trader.get_status()["stats"]["orders_filled"] == 1

    @pytest.mark.asyncio
    async def test_paused_trader_places_nothing(self):
        trader, exchange = _make_trader()
        await trader.start()
        await trader.pause()

        await trader.handle_bar(SYMBOL, _DIP)
        assert exchange.orders == {}

        await trader.resume()
        await trader.handle_bar(SYMBOL, _RECOVER)
        assert trader.is_paused is False

    @pytest.mark.asyncio
    async def test_insufficient_exchange_balance(self):
        trader, exchange = _make_trader(_FakeExchange({"USDT": 50.0}))
        await trader.start()
        await trader.handle_bar(SYMBOL, _DIP)
        assert exchange.orders == {}

    @pytest.mark.asyncio
    async def test_round_trip_counts_profit(self):
        trader, exchange = _make_trader(_FakeExchange({"USDT": 1_000.0, "ETH": 5.0}))
        await trader.start()
        await trader.handle_bar(SYMBOL, _DIP)
        exchange.fill("ex-1")
        await trader.handle_bar(SYMBOL, _RECOVER)
        await trader.handle_bar(SYMBOL, _RALLY)

        sells = [o for o in exchange.orders.values() if o.side is OrderSide.SELL]
        assert len(sells) == 1
        exchange.fill(sells[0].order_id)
        await trader.handle_bar(
            SYMBOL, Candle(time=63 * _MINUTE, open=100.8, high=101.0, low=100.7, close=100.9),
        )

        stats = trader.get_status()["stats"]
        assert stats["completed_trades"] == 1
        assert stats["total_profit"] > 0
        assert not trader.engine.has_open_position(SYMBOL, 4)

    @pytest.mark.asyncio
    async def test_quantity_rounding_to_zero_is_skipped(self, caplog):
        engine = _make_engine(base_grid_size=10.0, quantity_precision=0)
        trader, exchange = _make_trader(engine=engine)
        await trader.start()

        await trader.handle_bar(SYMBOL, _DIP)

        assert exchange.orders == {}
        assert trader.get_status()["stats"]["orders_placed"] == 0
        assert "must be positive" in caplog.text


class TestCommission:
    def test_rate_must_match_strategy(self):
        with pytest.raises(ConfigError, match="commission_rate"):
            LiveTrader(
                engine=_make_engine(),
                market_data=ReplayMarketData({SYMBOL: _history()}, warmup=60),
                exchange=_FakeExchange(),
                symbols=[SYMBOL],
                commission_rate=0.002,
            )
