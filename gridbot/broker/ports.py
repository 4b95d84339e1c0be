"""Collaborator interfaces consumed by the simulator and the live trader.

Implementations are duck-typed; tests pass plain mock classes.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from gridbot.broker.models import ExchangeOrder, OrderSide
from gridbot.strategy.models import Candle

BarCallback = Callable[[Candle], Awaitable[None]]


@runtime_checkable
class MarketDataSource(Protocol):
    """Historical candles plus a live bar subscription."""

    async def fetch_historical(self, symbol: str, limit: int) -> list[Candle]:
        """Return up to *limit* candles, oldest first."""
        ...

    async def subscribe(self, symbol: str, on_bar: BarCallback) -> Any:
        """Start delivering closed bars to *on_bar*; return a handle."""
        ...

    async def unsubscribe(self, handle: Any) -> None:
        """Stop the subscription behind *handle*.  Safe to call twice."""
        ...


@runtime_checkable
class ExchangeClient(Protocol):
    """Order placement on a real exchange (live trading only)."""

    async def place_limit_order(
        self, symbol: str, side: OrderSide, price: float, quantity: float,
    ) -> str:
        ...

    async def query_order(self, symbol: str, order_id: str) -> ExchangeOrder:
        ...

    async def cancel_all(self, symbol: str) -> None:
        ...

    async def get_balances(self) -> dict[str, float]:
        ...


@runtime_checkable
class ReportSink(Protocol):
    """Destination for status snapshots, final reports and the transaction log."""

    def save_status_report(self, report: dict) -> None:
        ...

    def save_final_report(self, report: dict) -> None:
        ...

    def log_transaction(self, entry: dict) -> None:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Fire-and-forget user notifications."""

    async def notify(self, message: str, severity: str = "info") -> None:
        ...

    async def notify_trade(self, trade: dict) -> None:
        ...

    async def notify_error(self, error: Exception, context: str = "") -> None:
        ...

    async def notify_status(self, status: dict) -> None:
        ...
