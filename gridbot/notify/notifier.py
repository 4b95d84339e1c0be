"""Notification delivery through the application log."""

import logging

logger = logging.getLogger("gridbot.notify")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class LoggingNotifier:
    """Writes notifications to the ``gridbot.notify`` logger.

    Args:
        min_severity: Notifications below this severity are dropped.
    """

    def __init__(self, min_severity: str = "info") -> None:
        if min_severity not in _LEVELS:
            raise ValueError(
                f"Unknown severity '{min_severity}'. Available: {', '.join(_LEVELS)}"
            )
        self._min_level = _LEVELS[min_severity]
        self.sent = 0

    async def notify(self, message: str, severity: str = "info") -> None:
        level = _LEVELS.get(severity, logging.INFO)
        if level < self._min_level:
            return
        logger.log(level, "[%s] %s", severity.upper(), message)
        self.sent += 1

    async def notify_trade(self, trade: dict) -> None:
        message = (
            f"{trade.get('mode', '').upper()} {trade['side']} {trade['quantity']:.8f} "
            f"{trade['symbol']} @ {trade['price']:.8f}"
        )
        if trade.get("net_profit") is not None:
            message += f" (net {trade['net_profit']:+.8f})"
        await self.notify(message, "success")

    async def notify_error(self, error: Exception, context: str = "") -> None:
        prefix = f"{context}: " if context else ""
        await self.notify(f"{prefix}{type(error).__name__}: {error}", "error")

    async def notify_status(self, status: dict) -> None:
        performance = status.get("performance", {})
        balances = ", ".join(
            f"{amount:.8f} {asset}" for asset, amount in status.get("balances", {}).items()
        )
        await self.notify(
            f"Status ({status.get('mode')}): trades={performance.get('total_trades', 0)} "
            f"profit={performance.get('total_profit', 0.0):.2f} "
            f"drawdown={performance.get('max_drawdown', 0.0):.2f}% balances: {balances}",
            "info",
        )
