"""Equity drawdown tracking for the paper ledger.

Fed with mark-to-market equity after every bar; reports the decline from
the running peak both in percent and in quote currency.
"""


class DrawdownTracker:
    """Running peak and worst decline of an equity series.

    Args:
        initial_equity: Starting equity in quote currency.
    """

    def __init__(self, initial_equity: float) -> None:
        if initial_equity <= 0:
            raise ValueError(
                f"initial_equity must be positive, got {initial_equity}"
            )
        self._peak = initial_equity
        self._equity = initial_equity
        self._worst_pct = 0.0
        self._worst_amount = 0.0

    def update(self, equity: float) -> float:
        """Record *equity* and return the current drawdown in percent."""
        self._equity = equity
        self._peak = max(self._peak, equity)
        current = self.drawdown_pct
        if current > self._worst_pct:
            self._worst_pct = current
            self._worst_amount = self._peak - equity
        return current

    @property
    def peak_equity(self) -> float:
        return self._peak

    @property
    def current_equity(self) -> float:
        return self._equity

    @property
    def drawdown_pct(self) -> float:
        return (self._peak - self._equity) / self._peak * 100.0

    @property
    def max_drawdown_pct(self) -> float:
        return self._worst_pct

    @property
    def max_drawdown_amount(self) -> float:
        """Quote-currency decline at the worst recorded drawdown."""
        return self._worst_amount
