"""Binance public market data over REST.

Fetches closed klines from ``/api/v3/klines`` and offers a polling
subscription that delivers each newly closed kline once.  Only public
endpoints are used; nothing here is signed.
"""

import asyncio
import itertools
import logging
import time
from typing import Callable, Optional

import httpx

from gridbot.broker.ports import BarCallback
from gridbot.config import Config
from gridbot.strategy.models import Candle

logger = logging.getLogger("gridbot")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429, 418}

_MAX_KLINES_PER_REQUEST = 1000

_INTERVAL_SECONDS = {
    "1m": 60, "3m": 180, "5m": 300, "15m": 900, "30m": 1800,
    "1h": 3600, "2h": 7200, "4h": 14400, "6h": 21600, "8h": 28800,
    "12h": 43200, "1d": 86400,
}


def parse_kline(row: list) -> tuple[Candle, int]:
    """Convert a Binance kline array into ``(Candle, close_time_ms)``."""
    return (
        Candle(
            time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        ),
        int(row[6]),
    )


class BinanceMarketData:
    """Kline history and polling bar subscription for Binance spot pairs.

    Args:
        config: Application configuration (base URL and kline interval).
        poll_interval: Seconds between polls; defaults to a fifth of the
            kline interval, at least one second.
        clock: Wall-clock source in epoch seconds.
    """

    def __init__(
        self,
        config: Config,
        poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if config.kline_interval not in _INTERVAL_SECONDS:
            raise ValueError(
                f"Unsupported kline interval '{config.kline_interval}'. "
                f"Available: {', '.join(_INTERVAL_SECONDS)}"
            )
        self._base_url = config.binance_base_url.rstrip("/")
        self._interval = config.kline_interval
        self._poll_interval = poll_interval or max(
            1.0, _INTERVAL_SECONDS[config.kline_interval] / 5,
        )
        self._clock = clock
        self._tasks: dict[int, asyncio.Task] = {}
        self._handles = itertools.count(1)

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(self, url: str, **kwargs) -> httpx.Response:
        """GET *url* with exponential-backoff retry.

        Retries on transient server errors and rate limits (429, 418).
        Other HTTP errors are raised immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(url, timeout=30.0, **kwargs)

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Binance GET %s returned %d, retry %d/%d in %.1fs",
                        url, resp.status_code, attempt + 1, _MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Binance GET %s transport error (%s), retry %d/%d in %.1fs",
                    url, exc, attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    # ── Klines ───────────────────────────────────────────────────────────

    async def _fetch_klines(self, symbol: str, limit: int) -> list[tuple[Candle, int]]:
        resp = await self._request_with_retry(
            f"{self._base_url}/api/v3/klines",
            params={
                "symbol": symbol.replace("/", ""),
                "interval": self._interval,
                "limit": min(limit, _MAX_KLINES_PER_REQUEST),
            },
        )
        return [parse_kline(row) for row in resp.json()]

    def _closed(self, klines: list[tuple[Candle, int]]) -> list[Candle]:
        now_ms = int(self._clock() * 1000)
        return [candle for candle, close_time in klines if close_time < now_ms]

    async def fetch_historical(self, symbol: str, limit: int) -> list[Candle]:
        """Return up to *limit* closed klines, oldest first."""
        # One extra row covers the kline that is still forming.
        candles = self._closed(await self._fetch_klines(symbol, limit + 1))[-limit:]
        logger.info("Fetched %d %s klines for %s", len(candles), self._interval, symbol)
        return candles

    # ── Subscription ─────────────────────────────────────────────────────

    async def subscribe(self, symbol: str, on_bar: BarCallback) -> int:
        handle = next(self._handles)
        self._tasks[handle] = asyncio.create_task(self._poll(symbol, on_bar))
        logger.info("Subscribed to %s %s klines (handle %d)", symbol, self._interval, handle)
        return handle

    async def unsubscribe(self, handle: int) -> None:
        task = self._tasks.pop(handle, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Unsubscribed kline handle %d", handle)

    async def _poll(self, symbol: str, on_bar: BarCallback) -> None:
        last_time: Optional[int] = None
        while True:
            try:
                closed = self._closed(await self._fetch_klines(symbol, 3))
                if last_time is None:
                    # History already covers these; start after the newest.
                    last_time = closed[-1].time if closed else 0
                else:
                    for candle in closed:
                        if candle.time > last_time:
                            await on_bar(candle)
                            last_time = candle.time
            except (httpx.HTTPError, ValueError, KeyError, IndexError) as exc:
                logger.error("Kline poll for %s failed: %s", symbol, exc)
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        for handle in list(self._tasks):
            await self.unsubscribe(handle)
