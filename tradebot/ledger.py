from __future__ import annotations

from typing import Dict, Iterator, Mapping, Optional, Tuple

from tradebot.errors import InsufficientBalanceError

# Float noise from qty*price products must not read as an overdraft.
EPSILON = 1e-9


class BalanceLedger:
    """asset -> available quantity. Never negative."""

    def __init__(self, balances: Optional[Mapping[str, float]] = None):
        self._balances: Dict[str, float] = {}
        for asset, amount in (balances or {}).items():
            if float(amount) < 0:
                raise InsufficientBalanceError(asset, 0.0, float(amount))
            self._balances[asset] = float(amount)

    def __iter__(self) -> Iterator[Tuple[str, float]]:
        return iter(sorted(self._balances.items()))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BalanceLedger):
            return NotImplemented
        return self._balances == other._balances

    def __repr__(self) -> str:
        return f"BalanceLedger({self._balances!r})"

    def get(self, asset: str) -> float:
        return self._balances.get(asset, 0.0)

    def as_dict(self) -> Dict[str, float]:
        return dict(self._balances)

    def credit(self, asset: str, amount: float) -> float:
        if amount < 0:
            raise ValueError(f"credit amount must be non-negative, got {amount}")
        self._balances[asset] = self.get(asset) + float(amount)
        return self._balances[asset]

    def debit(self, asset: str, amount: float) -> float:
        if amount < 0:
            raise ValueError(f"debit amount must be non-negative, got {amount}")
        current = self.get(asset)
        remaining = current - float(amount)
        if remaining < -EPSILON:
            raise InsufficientBalanceError(asset, amount, current)
        self._balances[asset] = max(0.0, remaining)
        return self._balances[asset]

    def apply_fill(self, base: str, quote: str, side: str, quantity: float, price: float) -> None:
        """
        BUY: +base, -quote. SELL: -base, +quote. Checked before anything moves,
        so a rejected fill leaves the ledger untouched.
        """
        notional = quantity * price
        if side == "BUY":
            spend_asset, spend, gain_asset, gain = quote, notional, base, quantity
        else:
            spend_asset, spend, gain_asset, gain = base, quantity, quote, notional

        available = self.get(spend_asset)
        if available - spend < -EPSILON:
            raise InsufficientBalanceError(spend_asset, spend, available)
        self.debit(spend_asset, spend)
        self.credit(gain_asset, gain)

    def replace(self, balances: Mapping[str, float]) -> None:
        for asset, amount in balances.items():
            if float(amount) < 0:
                raise InsufficientBalanceError(asset, 0.0, float(amount))
        for asset, amount in balances.items():
            self._balances[asset] = float(amount)

    def value(self, prices: Mapping[str, float], quote: str) -> Tuple[float, Dict[str, float]]:
        """
        Total value in `quote`. `prices` maps symbol -> price; an asset is valued through
        `{asset}{quote}` or the inverse `{quote}{asset}`; unpriced assets count as 0.
        """
        total = 0.0
        per_asset: Dict[str, float] = {}
        for asset, amount in self:
            if asset == quote:
                v = amount
            elif prices.get(f"{asset}{quote}"):
                v = amount * prices[f"{asset}{quote}"]
            elif prices.get(f"{quote}{asset}"):
                v = amount / prices[f"{quote}{asset}"]
            else:
                v = 0.0
            per_asset[asset] = v
            total += v
        return total, per_asset
