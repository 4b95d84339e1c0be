"""Replay market data source for backtests and tests.

Each symbol's candle series is split at ``warmup``: the head is served by
``fetch_historical`` and the tail is pushed to subscribers by ``replay``.
"""

import heapq
import itertools
import logging
from typing import Optional

from gridbot.broker.ports import BarCallback
from gridbot.strategy.indicators import validate_candles
from gridbot.strategy.models import Candle

logger = logging.getLogger("gridbot")


class ReplayMarketData:
    def __init__(self, series: dict[str, list[Candle]], warmup: int) -> None:
        if warmup < 0:
            raise ValueError(f"warmup must not be negative, got {warmup}")
        for candles in series.values():
            validate_candles(candles)
        self._series = {symbol: list(candles) for symbol, candles in series.items()}
        self._warmup = warmup
        self._subscribers: dict[int, tuple[str, BarCallback]] = {}
        self._handles = itertools.count(1)

    async def fetch_historical(self, symbol: str, limit: int) -> list[Candle]:
        if symbol not in self._series:
            raise KeyError(f"No replay data for {symbol}")
        return self._series[symbol][: self._warmup][-limit:]

    async def subscribe(self, symbol: str, on_bar: BarCallback) -> int:
        handle = next(self._handles)
        self._subscribers[handle] = (symbol, on_bar)
        return handle

    async def unsubscribe(self, handle: int) -> None:
        self._subscribers.pop(handle, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def replay_length(self, symbol: Optional[str] = None) -> int:
        symbols = [symbol] if symbol else list(self._series)
        return sum(max(0, len(self._series[s]) - self._warmup) for s in symbols)

    async def replay(self) -> int:
        """Deliver every post-warmup bar to its subscribers in time order.

        Stops early once nobody is subscribed.  Returns the number of bars
        delivered.
        """
        streams = [
            ((c.time, symbol, c) for c in candles[self._warmup:])
            for symbol, candles in self._series.items()
        ]
        delivered = 0
        for _, symbol, candle in heapq.merge(*streams, key=lambda item: (item[0], item[1])):
            if not self._subscribers:
                break
            for sub_symbol, on_bar in list(self._subscribers.values()):
                if sub_symbol == symbol:
                    await on_bar(candle)
            delivered += 1
        logger.debug("Replay delivered %d bars", delivered)
        return delivered
