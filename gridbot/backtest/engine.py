"""Backtest engine — replays historical candles through the trading simulator.

The head of each series warms up the strategy; the tail is replayed bar by
bar in time order.  Matching, fees and accounting are exactly those of
paper trading.  No real orders are placed.
"""

import logging
from typing import Optional

from gridbot.backtest.stats import calculate_stats
from gridbot.broker.ports import ReportSink
from gridbot.broker.replay import ReplayMarketData
from gridbot.config import PaperConfig, StrategyConfig, SymbolConfig
from gridbot.paper.simulator import TradingSimulator
from gridbot.strategy.engine import StrategyEngine
from gridbot.strategy.models import Candle

logger = logging.getLogger("gridbot")

_YEAR_MS = 365 * 24 * 60 * 60 * 1000
_MINUTE_BARS_PER_YEAR = 525_600


def _periods_per_year(series: dict[str, list[Candle]], warmup: int) -> int:
    """Equity samples per year implied by the replayed bars.

    The curve gains one sample per replayed bar of every symbol, so the
    rate is counted across all series over the replayed time span.
    """
    times = [c.time for candles in series.values() for c in candles[warmup:]]
    span = max(times) - min(times) if times else 0
    steps = len(times) - len(series)
    if span <= 0 or steps <= 0:
        return _MINUTE_BARS_PER_YEAR
    return max(1, round(steps * _YEAR_MS / span))


class BacktestEngine:
    """Simulates grid trading on historical candle data.

    Args:
        strategy_config: Strategy settings.
        symbols: Symbol settings; every replayed symbol must be listed.
        paper_config: Starting balance, fees and slippage.
        report_sink: Optional sink that receives the final report and
            transaction log.
    """

    def __init__(
        self,
        strategy_config: StrategyConfig,
        symbols: list[SymbolConfig],
        paper_config: PaperConfig,
        report_sink: Optional[ReportSink] = None,
    ) -> None:
        self._strategy_config = strategy_config
        self._symbols = symbols
        self._paper_config = paper_config
        self._report_sink = report_sink

    # ── Public API ───────────────────────────────────────────────────────

    async def run(
        self,
        series: dict[str, list[Candle]],
        warmup: Optional[int] = None,
    ) -> dict:
        """Execute a full backtest.

        Args:
            series: Candles per symbol, oldest first.
            warmup: Leading candles used only to initialize the strategy.
                Defaults to ``bar_count_for_volatility``.

        Returns:
            Dict with ``trades``, ``final_equity``, ``final_balances``,
            ``equity_curve``, ``stats``, ``open_orders`` and ``report``.
        """
        if not series:
            raise ValueError("No candle series to backtest")
        if warmup is None:
            warmup = self._strategy_config.bar_count_for_volatility
        for symbol, candles in series.items():
            if len(candles) <= warmup:
                raise ValueError(
                    f"{symbol}: need more than {warmup} candles to backtest, "
                    f"got {len(candles)}"
                )

        paper_config = self._paper_config
        if paper_config.history_limit < warmup:
            logger.warning(
                "history_limit %d is shorter than warmup %d; strategy sees only "
                "the most recent %d warm-up candles",
                paper_config.history_limit, warmup, paper_config.history_limit,
            )

        first_time = min(candles[warmup].time for candles in series.values())
        now = {"seconds": first_time / 1000}
        market_data = ReplayMarketData(series, warmup)
        simulator = TradingSimulator(
            engine=StrategyEngine(self._strategy_config, self._symbols),
            market_data=market_data,
            paper_config=paper_config,
            symbols=list(series),
            report_sink=self._report_sink,
            mode="backtest",
            clock=lambda: now["seconds"],
        )

        equity_curve: list[float] = [paper_config.initial_balance]

        async def _advance_clock(candle: Candle) -> None:
            now["seconds"] = candle.time / 1000

        async def _record_equity(candle: Candle) -> None:
            equity_curve.append(simulator.equity())

        # Subscription order fixes call order: clock, simulator, recorder.
        for symbol in series:
            await market_data.subscribe(symbol, _advance_clock)
        await simulator.start()
        for symbol in series:
            await market_data.subscribe(symbol, _record_equity)

        bars = await market_data.replay()
        open_orders = [o.to_dict() for o in simulator.get_open_orders()]
        report = await simulator.stop()

        trades = [
            {
                "symbol": t.symbol,
                "grid_index": t.grid_index,
                "entry_price": t.entry_price,
                "exit_price": t.exit_price,
                "quantity": t.quantity,
                "commission": t.commission,
                "net_profit": t.net_profit,
                "closed_at": t.closed_at,
            }
            for t in simulator.get_realized_trades()
        ]
        stats = calculate_stats(
            trades, equity_curve, periods_per_year=_periods_per_year(series, warmup),
        )
        logger.info(
            "Backtest finished: %d bars, %d trades, net %.2f, return %.2f%%",
            bars, stats["total_trades"], stats["net_pnl"], stats["return_pct"],
        )
        return {
            "trades": trades,
            "final_equity": simulator.equity(),
            "final_balances": simulator.get_balances(),
            "equity_curve": equity_curve,
            "stats": stats,
            "open_orders": open_orders,
            "report": report,
        }
