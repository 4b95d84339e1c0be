"""Internal API routers — /status, /balances, /orders, /performance, /strategy.

No business logic, no DB access beyond the report repo.  Reads from the
running trader and shared status state.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

logger = logging.getLogger("gridbot")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_DEFAULT_STATUS: dict = {
    "mode": "idle",
    "running": False,
    "symbols": [],
    "started_at": None,
    "last_bar_at": None,
}

_bot_status: dict = {**_DEFAULT_STATUS}
_trader = None       # TradingSimulator or LiveTrader, set via configure_routers()
_report_repo = None  # Set via configure_routers()


def configure_routers(trader=None, report_repo=None, bot_status: Optional[dict] = None) -> None:
    """Inject dependencies from the application startup.

    Args:
        trader: The running ``TradingSimulator`` or ``LiveTrader`` (or a
            duck-type for tests).
        report_repo: A ``ReportRepo`` for the transaction log.
        bot_status: Optional fields to merge into the status dict.
    """
    global _trader, _report_repo  # noqa: PLW0603
    _trader = trader
    _report_repo = report_repo
    _bot_status.clear()
    _bot_status.update(_DEFAULT_STATUS)
    if bot_status is not None:
        _bot_status.update(bot_status)


def update_bot_status(**fields) -> None:
    """Update individual fields of the shared status dict."""
    _bot_status.update(fields)


def _require_trader():
    if _trader is None:
        raise HTTPException(status_code=503, detail="Trader not running")
    return _trader


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status() -> dict:
    """Bot status plus the trader's latest snapshot when one is available."""
    status = {**_bot_status}
    if _bot_status.get("started_at"):
        started = datetime.fromisoformat(_bot_status["started_at"])
        status["uptime_seconds"] = int(
            (datetime.now(timezone.utc) - started).total_seconds()
        )
    if _trader is not None:
        if hasattr(_trader, "get_status_snapshot"):
            status["snapshot"] = _trader.get_status_snapshot().to_dict()
        elif hasattr(_trader, "get_status"):
            status["snapshot"] = _trader.get_status()
    return status


@router.get("/balances")
async def get_balances() -> dict:
    trader = _require_trader()
    if not hasattr(trader, "get_balances"):
        raise HTTPException(status_code=404, detail="Balances not tracked in this mode")
    return {"balances": trader.get_balances()}


@router.get("/orders")
async def get_orders(open_only: bool = Query(default=True)) -> dict:
    trader = _require_trader()
    if open_only or not hasattr(trader, "get_orders"):
        orders = trader.get_open_orders()
    else:
        orders = trader.get_orders()
    return {
        "orders": [o.to_dict() if hasattr(o, "to_dict") else vars(o) for o in orders],
    }


@router.get("/performance")
async def get_performance() -> dict:
    trader = _require_trader()
    if hasattr(trader, "get_performance_summary"):
        return trader.get_performance_summary().to_dict()
    return trader.get_status()["stats"]


@router.get("/strategy/{symbol}")
async def get_strategy(symbol: str) -> dict:
    """Grid state and metrics for *symbol*."""
    trader = _require_trader()
    state = trader.engine.get_strategy_state(symbol)
    metrics = trader.engine.get_metrics(symbol)
    if state is None or metrics is None:
        raise HTTPException(status_code=404, detail=f"No strategy for {symbol}")
    analysis = metrics.volatility_analysis
    return {
        "symbol": symbol,
        "current_price": state.current_price,
        "ema200": state.ema200,
        "atr": state.atr,
        "grid_interval": state.grid_interval,
        "total_profit": state.total_profit,
        "should_trade": trader.engine.should_trade_based_on_ema(symbol),
        "grid_levels": [level.to_dict() for level in state.grid_levels],
        "open_positions": {
            str(index): vars(position) for index, position in state.open_positions.items()
        },
        "metrics": {
            "total_trades": metrics.total_trades,
            "winning_trades": metrics.winning_trades,
            "total_profit": metrics.total_profit,
            "win_rate": metrics.win_rate,
            "avg_profit_per_trade": metrics.avg_profit_per_trade,
            "is_eligible": metrics.is_eligible,
            "volatility_reason": analysis.reason if analysis else None,
        },
    }


@router.get("/transactions")
async def get_transactions(
    limit: int = Query(default=50, ge=1, le=500),
    symbol: Optional[str] = Query(default=None),
) -> dict:
    if _report_repo is None:
        return {"transactions": []}
    return {"transactions": _report_repo.get_transactions(limit=limit, symbol=symbol)}
