from __future__ import annotations

from typing import Optional


class TradeBotError(Exception):
    pass


class ConfigError(TradeBotError):
    """Missing or invalid configuration. Fatal at startup."""


class RequestError(TradeBotError):
    """An outbound call failed on every attempt."""

    def __init__(self, endpoint: str, last_cause: Optional[BaseException], attempts: int = 0):
        self.endpoint = endpoint
        self.last_cause = last_cause
        self.attempts = attempts
        cause = f"{type(last_cause).__name__}: {last_cause}" if last_cause is not None else "unknown"
        super().__init__(f"{endpoint} failed after {attempts} attempt(s): {cause}")


class InsufficientBalanceError(TradeBotError):
    def __init__(self, asset: str, required: float, available: float):
        self.asset = asset
        self.required = float(required)
        self.available = float(available)
        super().__init__(f"insufficient {asset}: need {self.required:.8f}, have {self.available:.8f}")


class MarketDataError(TradeBotError):
    """Empty candle set, missing price or an unparseable payload."""


class PersistenceError(TradeBotError):
    pass
