"""Error taxonomy for the grid bot.

Hard failures are raised.  Soft failures (insufficient balance, invalid
order parameters, insufficient data on the grid-sizing path) are logged and
reflected in return values by their callers; the matching classes exist so
that the same condition can be raised where a caller needs it to be fatal.
"""


class GridBotError(Exception):
    """Base class for all grid bot errors."""


class ConfigError(GridBotError, ValueError):
    """Raised when configuration is missing or out of range."""


class InsufficientDataError(GridBotError, ValueError):
    """Raised when an indicator does not have enough candles to proceed."""

    def __init__(self, indicator: str, required: int, actual: int) -> None:
        self.indicator = indicator
        self.required = required
        self.actual = actual
        super().__init__(
            f"Need at least {required} candles for {indicator}, got {actual}"
        )


class MalformedCandleError(GridBotError, ValueError):
    """Raised when candle data is non-finite, non-positive or mis-ordered."""


class SymbolNotConfiguredError(GridBotError):
    """Raised when a symbol has no matching symbol configuration."""

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"Symbol configuration not found for {symbol}")


class InsufficientBalanceError(GridBotError):
    """Raised by the ledger when a debit would leave a negative balance."""

    def __init__(self, asset: str, required: float, available: float) -> None:
        self.asset = asset
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient {asset} balance: required {required:.8f}, "
            f"available {available:.8f}"
        )


class InvalidOrderParametersError(GridBotError, ValueError):
    """Raised when an order has a non-positive or non-finite price/quantity."""


class OrderStateError(GridBotError):
    """Raised on an illegal virtual order status transition."""


class AlreadyRunningError(GridBotError, RuntimeError):
    """Raised when starting a trader that is already running."""


class NotRunningError(GridBotError, RuntimeError):
    """Raised when an operation requires a running trader."""
