import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

# Project root on sys.path so tests import `tradebot` without installation.
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from tradebot.errors import MarketDataError, RequestError  # noqa: E402
from tradebot.providers.base import ExchangeClient  # noqa: E402
from tradebot.schemas import Candle, OrderAck, TradingPair  # noqa: E402

HOUR_MS = 3_600_000


def candles_from_closes(
    closes: Sequence[float],
    *,
    volumes: Optional[Sequence[float]] = None,
    high_pad: float = 1.0,
    low_pad: float = 1.0,
    start_ms: int = 1_700_000_000_000,
) -> List[Candle]:
    out = []
    prev = closes[0]
    for i, close in enumerate(closes):
        out.append(
            Candle(
                open_time=start_ms + i * HOUR_MS,
                open=float(prev),
                high=float(max(prev, close) + high_pad),
                low=float(min(prev, close) - low_pad),
                close=float(close),
                volume=float(volumes[i]) if volumes is not None else 100.0,
            )
        )
        prev = close
    return out


class FakeExchange(ExchangeClient):
    """Scripted exchange: prices, candles and order statuses are set by the test."""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices: Dict[str, float] = dict(prices or {})
        self.candles: Dict[str, List[Candle]] = {}
        self.statuses: Dict[str, str] = {}
        self.balances: Dict[str, Dict[str, float]] = {}
        self.placed: List[dict] = []
        self.status_queries: List[str] = []
        self.fail_place: Optional[Exception] = None
        self.fail_status: Optional[Exception] = None
        self.closed = False
        self._next_id = 1

    async def get_current_price(self, symbol: str) -> float:
        if symbol not in self.prices:
            raise MarketDataError(f"no price for {symbol}")
        return self.prices[symbol]

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        return list(self.candles.get(symbol, []))[-limit:]

    async def get_account_balances(self) -> Dict[str, Dict[str, float]]:
        return dict(self.balances)

    async def place_order(self, symbol, side, quantity, price) -> OrderAck:
        if self.fail_place is not None:
            raise self.fail_place
        order_id = str(self._next_id)
        self._next_id += 1
        self.placed.append({"id": order_id, "symbol": symbol, "side": side, "quantity": quantity, "price": price})
        self.statuses.setdefault(order_id, "NEW")
        return OrderAck(order_id=order_id, status="NEW")

    async def get_order_status(self, symbol: str, order_id: str) -> str:
        self.status_queries.append(order_id)
        if self.fail_status is not None:
            raise self.fail_status
        return self.statuses.get(order_id, "NEW")

    async def aclose(self) -> None:
        self.closed = True


def request_error(endpoint: str = "/api/v3/order") -> RequestError:
    return RequestError(endpoint, ConnectionError("boom"), 3)


@pytest.fixture
def bnb_usdt() -> TradingPair:
    return TradingPair(symbol="BNBUSDT", base_asset="BNB", quote_asset="USDT")


@pytest.fixture
def fake_exchange() -> FakeExchange:
    return FakeExchange(prices={"BNBUSDT": 100.0})
