"""Synchronous event bus for trader side effects.

Listeners run in registration order inside the tick that emitted the
event, before the next tick is processed.
"""

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger("gridbot")

ORDER_CREATED = "order_created"
ORDER_FILLED = "order_filled"
ORDER_CANCELED = "order_canceled"
BALANCE_UPDATED = "balance_updated"
PROFIT_REALIZED = "profit_realized"
INSUFFICIENT_BALANCE = "insufficient_balance"
ERROR = "error"
STATUS_UPDATE = "status_update"

EVENT_TYPES = (
    ORDER_CREATED,
    ORDER_FILLED,
    ORDER_CANCELED,
    BALANCE_UPDATED,
    PROFIT_REALIZED,
    INSUFFICIENT_BALANCE,
    ERROR,
    STATUS_UPDATE,
)

Listener = Callable[[Any], None]


class EventBus:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> None:
        if event not in EVENT_TYPES:
            raise ValueError(f"Unknown event type '{event}'")
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, payload: Any = None) -> None:
        """Call every listener for *event* with *payload*.

        A failing listener is logged and does not stop the others.
        """
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for '%s' failed", event)

    def listener_count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(v) for v in self._listeners.values())

    def clear(self) -> None:
        self._listeners.clear()
