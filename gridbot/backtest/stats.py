"""Backtest statistics — pure functions for trade and equity series."""

import math
from typing import Optional


def calculate_stats(
    trades: list[dict],
    equity_curve: list[float],
    periods_per_year: int = 525_600,
) -> dict:
    """Compute summary statistics for a finished backtest.

    Each trade dict must have ``"net_profit"`` and ``"commission"`` keys.
    *equity_curve* holds mark-to-market equity after each bar, starting
    with the initial balance; *periods_per_year* annualises the Sharpe
    ratio (default assumes 1-minute bars).

    Returns:
        Dict with ``total_trades``, ``winning_trades``, ``losing_trades``,
        ``win_rate``, ``profit_factor``, ``sharpe_ratio``,
        ``max_drawdown_pct``, ``net_pnl``, ``total_commission`` and
        ``return_pct``.
    """
    pnls = [t["net_profit"] for t in trades]
    winners = [p for p in pnls if p > 0]
    losers = [p for p in pnls if p <= 0]

    gross_loss = abs(sum(losers))
    profit_factor: Optional[float] = (
        sum(winners) / gross_loss if gross_loss > 0 else None
    )
    initial = equity_curve[0] if equity_curve else 0.0
    final = equity_curve[-1] if equity_curve else 0.0

    return {
        "total_trades": len(pnls),
        "winning_trades": len(winners),
        "losing_trades": len(losers),
        "win_rate": round(len(winners) / len(pnls) * 100, 4) if pnls else 0.0,
        "profit_factor": round(profit_factor, 4) if profit_factor is not None else None,
        "sharpe_ratio": round(_sharpe(equity_curve, periods_per_year), 4),
        "max_drawdown_pct": round(_max_drawdown_pct(equity_curve), 4),
        "net_pnl": round(sum(pnls), 8),
        "total_commission": round(sum(t["commission"] for t in trades), 8),
        "return_pct": round((final - initial) / initial * 100, 4) if initial else 0.0,
    }


# ── Helpers ──────────────────────────────────────────────────────────────


def _sharpe(equity_curve: list[float], periods_per_year: int) -> float:
    """Annualised Sharpe ratio of per-bar equity returns.

    Uses sample standard deviation (n − 1).  Returns 0.0 with fewer than
    two returns or zero variance.
    """
    returns = [
        (b - a) / a for a, b in zip(equity_curve, equity_curve[1:]) if a > 0
    ]
    n = len(returns)
    if n < 2:
        return 0.0
    mean = sum(returns) / n
    variance = sum((r - mean) ** 2 for r in returns) / (n - 1)
    std = math.sqrt(variance)
    if std == 0:
        return 0.0
    return (mean / std) * math.sqrt(periods_per_year)


def _max_drawdown_pct(equity_curve: list[float]) -> float:
    """Largest peak-to-trough decline of *equity_curve*, in percent."""
    peak = 0.0
    max_dd = 0.0
    for equity in equity_curve:
        peak = max(peak, equity)
        if peak > 0:
            max_dd = max(max_dd, (peak - equity) / peak * 100)
    return max_dd
