from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List

from tradebot.schemas import Candle, OrderAck, Side

AssetBalance = Dict[str, float]  # {"free": ..., "locked": ...}

FILLED = "FILLED"
# Exchange statuses after which an unfilled order will never fill.
DEAD_ORDER_STATUSES = frozenset({"CANCELED", "REJECTED", "EXPIRED", "EXPIRED_IN_MATCH"})


class ExchangeClient(ABC):
    @abstractmethod
    async def get_current_price(self, symbol: str) -> float:
        raise NotImplementedError

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """Candles ordered ascending by open time."""
        raise NotImplementedError

    @abstractmethod
    async def get_account_balances(self) -> Dict[str, AssetBalance]:
        raise NotImplementedError

    @abstractmethod
    async def place_order(self, symbol: str, side: Side, quantity: float, price: float) -> OrderAck:
        raise NotImplementedError

    @abstractmethod
    async def get_order_status(self, symbol: str, order_id: str) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
