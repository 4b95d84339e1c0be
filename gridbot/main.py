"""GridBot — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
paper, live, and backtest modes.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI

from gridbot.api.routers import router

app = FastAPI(title="GridBot Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("gridbot")


@app.get("/health")
async def health():
    return {"status": "ok"}


def warn_if_live(mode: str) -> bool:
    """Log a prominent warning when running in live mode.

    Returns ``True`` if *mode* is ``"live"``.
    """
    if mode == "live":
        logger.warning("LIVE TRADING MODE — Real money at risk!")
        return True
    return False


def build_trader(config, settings, mode: str, market_data, report_repo=None, exchange=None):
    """Wire the strategy engine and the trader for *mode*.

    Raises:
        ConfigError: live mode without an exchange client.
    """
    from gridbot.config import PaperConfig
    from gridbot.errors import ConfigError
    from gridbot.live.trader import LiveTrader
    from gridbot.notify.notifier import LoggingNotifier
    from gridbot.paper.simulator import TradingSimulator
    from gridbot.strategy.engine import StrategyEngine

    engine = StrategyEngine(settings.strategy, settings.symbols)
    symbols = [s.pair for s in settings.symbols]
    notifier = LoggingNotifier()

    if mode == "live":
        if exchange is None:
            raise ConfigError(
                "Live mode needs an exchange client; none is bundled with GridBot"
            )
        return LiveTrader(
            engine=engine,
            market_data=market_data,
            exchange=exchange,
            symbols=symbols,
            commission_rate=settings.strategy.commission_rate,
            report_sink=report_repo,
            notifier=notifier,
        )

    paper_config = PaperConfig(
        initial_balance=config.initial_balance,
        currency=config.quote_currency,
        reporting_interval_minutes=config.report_interval_minutes,
        history_limit=max(settings.strategy.bar_count_for_volatility,
                          settings.strategy.ema_period) + 1,
    )
    return TradingSimulator(
        engine=engine,
        market_data=market_data,
        paper_config=paper_config,
        symbols=symbols,
        report_sink=report_repo,
        notifier=notifier,
        mode=mode,
    )


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli(argv: Optional[list[str]] = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio

    from gridbot.config import load_config, load_settings
    from gridbot.repos.db import init_db
    from gridbot.repos.report_repo import ReportRepo

    parser = argparse.ArgumentParser(description="GridBot grid trading bot")
    parser.add_argument(
        "--mode",
        choices=["paper", "live", "backtest"],
        default=None,
        help="Trading mode (default: GRIDBOT_MODE or paper)",
    )
    parser.add_argument("--settings", help="Path to the JSON settings file")
    parser.add_argument(
        "--limit",
        type=int,
        default=1000,
        help="Candles to fetch per symbol for a backtest (default: 1000)",
    )
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the trader without the API server",
    )
    args = parser.parse_args(argv)

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    mode = args.mode or config.mode
    settings = load_settings(args.settings or config.settings_path)
    init_db(config.db_path)
    report_repo = ReportRepo(config.db_path)
    warn_if_live(mode)

    if mode == "backtest":
        asyncio.run(_run_backtest(config, settings, args.limit, report_repo))
    else:
        asyncio.run(_run_trader(config, settings, mode, report_repo, not args.engine_only))


async def _run_trader(config, settings, mode: str, report_repo, with_api: bool) -> None:
    """Run a paper or live trader, optionally alongside the API server."""
    import asyncio
    import signal

    import uvicorn

    from gridbot.api.routers import configure_routers, update_bot_status
    from gridbot.broker.binance_market_data import BinanceMarketData

    market_data = BinanceMarketData(config)
    trader = build_trader(config, settings, mode, market_data, report_repo)
    configure_routers(trader=trader, report_repo=report_repo)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    await trader.start()
    update_bot_status(
        mode=mode,
        running=True,
        symbols=[s.pair for s in settings.symbols],
        started_at=datetime.now(timezone.utc).isoformat(),
    )
    logger.info("GridBot running in %s mode", mode)

    server = None
    server_task = None
    if with_api:
        server = uvicorn.Server(uvicorn.Config(
            app, host="0.0.0.0", port=config.api_port, log_level="info",
        ))
        server_task = asyncio.create_task(server.serve())
        logger.info("Status API available at http://localhost:%d", config.api_port)

    try:
        await stop_event.wait()
        logger.info("Shutdown signal received — stopping gracefully.")
    finally:
        await trader.stop()
        await market_data.close()
        update_bot_status(running=False)
        if server is not None:
            server.should_exit = True
            await server_task


async def _run_backtest(config, settings, limit: int, report_repo) -> None:
    """Fetch recent klines for every symbol and replay them."""
    from gridbot.backtest.engine import BacktestEngine
    from gridbot.broker.binance_market_data import BinanceMarketData
    from gridbot.config import PaperConfig

    market_data = BinanceMarketData(config)
    series = {}
    for symbol_cfg in settings.symbols:
        series[symbol_cfg.pair] = await market_data.fetch_historical(symbol_cfg.pair, limit)

    warmup = min(settings.strategy.bar_count_for_volatility, limit // 2)
    paper_config = PaperConfig(
        initial_balance=config.initial_balance,
        currency=config.quote_currency,
        enable_notifications=False,
        history_limit=max(warmup, settings.strategy.ema_period) + 1,
    )
    backtest = BacktestEngine(settings.strategy, settings.symbols, paper_config, report_repo)
    result = await backtest.run(series, warmup=warmup)
    stats = result["stats"]
    logger.info(
        "Backtest complete: %d trades, PnL: %.2f %s, Win rate: %.1f%%, "
        "Max drawdown: %.2f%%",
        stats["total_trades"], stats["net_pnl"], config.quote_currency,
        stats["win_rate"], stats["max_drawdown_pct"],
    )


if __name__ == "__main__":
    _run_cli()
