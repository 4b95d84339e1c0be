"""Paper-trading report models."""

from dataclasses import asdict, dataclass, field


@dataclass(frozen=True)
class RealizedTrade:
    """A closed grid round trip as booked by the ledger."""

    symbol: str
    grid_index: int
    entry_price: float
    exit_price: float
    quantity: float
    commission: float
    net_profit: float
    closed_at: int  # epoch ms


@dataclass(frozen=True)
class PerformanceSnapshot:
    """Derived on demand; never stored."""

    total_trades: int
    winning_trades: int
    total_profit: float
    max_drawdown: float  # percent
    win_rate: float  # percent
    runtime: float  # seconds since start
    equity: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class StatusSnapshot:
    time: str  # ISO-8601 UTC
    mode: str
    balances: dict[str, float]
    open_orders: list[dict]
    performance: PerformanceSnapshot
    strategies: dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "time": self.time,
            "mode": self.mode,
            "balances": dict(self.balances),
            "open_orders": list(self.open_orders),
            "performance": self.performance.to_dict(),
            "strategies": dict(self.strategies),
        }
