"""Virtual balance ledger for paper trading.

The asset → amount mapping is private.  Reads return copies; every
mutation goes through ``apply`` which checks all debits before touching
anything, so a rejected change leaves the ledger exactly as it was.
"""

import logging
import math

from gridbot.errors import InsufficientBalanceError

logger = logging.getLogger("gridbot")

# Rounding noise tolerated when a debit empties a balance.
_EPSILON = 1e-9


class VirtualLedger:
    def __init__(self, initial: dict[str, float] | None = None) -> None:
        self._balances: dict[str, float] = {}
        for asset, amount in (initial or {}).items():
            if amount < 0 or not math.isfinite(amount):
                raise ValueError(f"Invalid initial balance for {asset}: {amount}")
            self._balances[asset] = float(amount)

    def balance(self, asset: str) -> float:
        return self._balances.get(asset, 0.0)

    def balances(self) -> dict[str, float]:
        return dict(self._balances)

    def can_afford(self, asset: str, amount: float) -> bool:
        return self.balance(asset) + _EPSILON >= amount

    def apply(self, changes: dict[str, float]) -> None:
        """Apply signed per-asset *changes* atomically.

        Raises:
            InsufficientBalanceError: a debit exceeds the available amount.
                No balance is modified.
        """
        for asset, delta in changes.items():
            if not math.isfinite(delta):
                raise ValueError(f"Non-finite balance change for {asset}: {delta}")
            if delta < 0 and not self.can_afford(asset, -delta):
                raise InsufficientBalanceError(asset, -delta, self.balance(asset))

        for asset, delta in changes.items():
            new = self.balance(asset) + delta
            if new < 0:
                # Only reachable within _EPSILON of zero.
                logger.debug("Clamping %s balance %.3g to zero", asset, new)
                new = 0.0
            self._balances[asset] = new
        logger.debug("Ledger updated: %s", changes)

    def credit(self, asset: str, amount: float) -> None:
        self.apply({asset: amount})

    def debit(self, asset: str, amount: float) -> None:
        self.apply({asset: -amount})
