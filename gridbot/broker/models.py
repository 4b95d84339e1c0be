"""Broker data models — virtual orders and exchange-side order records."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from gridbot.errors import OrderStateError


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"


class OrderStatus(str, Enum):
    """Order lifecycle.  ``FILLED`` and ``CANCELED`` are terminal."""

    NEW = "NEW"
    FILLED = "FILLED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.NEW


@dataclass
class VirtualOrder:
    """A simulated order held by the paper-trading ledger.

    Only ``NEW → FILLED`` and ``NEW → CANCELED`` are allowed; a terminal
    order refuses further transitions.
    """

    id: int
    symbol: str
    side: OrderSide
    type: OrderType
    price: float
    quantity: float
    created_at: int
    status: OrderStatus = OrderStatus.NEW
    filled_quantity: float = 0.0
    updated_at: Optional[int] = None
    grid_level_index: Optional[int] = None
    fill_price: Optional[float] = None

    def fill(self, price: float, timestamp: int) -> None:
        self._require_open("fill")
        self.status = OrderStatus.FILLED
        self.filled_quantity = self.quantity
        self.fill_price = price
        self.updated_at = timestamp

    def cancel(self, timestamp: int) -> None:
        self._require_open("cancel")
        self.status = OrderStatus.CANCELED
        self.updated_at = timestamp

    def _require_open(self, action: str) -> None:
        if self.status.is_terminal:
            raise OrderStateError(
                f"Cannot {action} order {self.id}: already {self.status.value}"
            )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["side"] = self.side.value
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class ExchangeOrder:
    """An order as reported by a live exchange client."""

    order_id: str
    symbol: str
    side: OrderSide
    price: float
    quantity: float
    status: OrderStatus
    filled_quantity: float = 0.0
    fill_price: Optional[float] = None
