from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any, Callable, Dict, List
from urllib.parse import urlencode

from tradebot.config import BinanceExchangeConfig
from tradebot.errors import MarketDataError, RequestError
from tradebot.providers.base import AssetBalance, ExchangeClient
from tradebot.requester import Params, Requester, RequestSpec
from tradebot.schemas import Candle, OrderAck, Side


PRICE_ENDPOINT = "/api/v3/ticker/price"
KLINES_ENDPOINT = "/api/v3/klines"
ACCOUNT_ENDPOINT = "/api/v3/account"
ORDER_ENDPOINT = "/api/v3/order"


def sign_query(secret: str, params: Params) -> str:
    """HMAC-SHA256 over the urlencoded query string, hex digest."""
    qs = urlencode(params)
    return hmac.new(secret.encode(), qs.encode(), hashlib.sha256).hexdigest()


def parse_kline(row: List[Any]) -> Candle:
    return Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class BinanceExchange(ExchangeClient):
    """
    Binance spot REST API. Every call goes through the shared Requester, keyed by path,
    so throttling is per endpoint.

    Endpoints:
      GET  /api/v3/ticker/price   public
      GET  /api/v3/klines         public
      GET  /api/v3/account        signed
      POST /api/v3/order          signed, LIMIT GTC
      GET  /api/v3/order          signed
    """

    def __init__(
        self,
        cfg: BinanceExchangeConfig,
        requester: Requester,
        *,
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        if not cfg.api_key or not cfg.api_secret:
            raise ValueError("Binance API key and secret are required")
        self._cfg = cfg
        self._requester = requester
        self._clock_ms = clock_ms
        self._base_url = cfg.base_url.rstrip("/")

    def _signer(self, params: Params) -> Params:
        signed = dict(params)
        signed["recvWindow"] = self._cfg.recv_window
        signed["timestamp"] = self._clock_ms()
        signed["signature"] = sign_query(str(self._cfg.api_secret), signed)
        return signed

    async def _public(self, path: str, params: Params) -> Any:
        spec = RequestSpec(method="GET", url=f"{self._base_url}{path}", params=params)
        return await self._requester.execute(path, spec)

    async def _signed(self, method: str, path: str, params: Params) -> Any:
        spec = RequestSpec(
            method=method,
            url=f"{self._base_url}{path}",
            params=params,
            headers={"X-MBX-APIKEY": str(self._cfg.api_key)},
            signer=self._signer,
        )
        return await self._requester.execute(path, spec)

    async def get_current_price(self, symbol: str) -> float:
        data = await self._public(PRICE_ENDPOINT, {"symbol": symbol})
        try:
            price = float(data["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise MarketDataError(f"Bad ticker payload for {symbol}: {data!r}") from e
        if price <= 0:
            raise MarketDataError(f"Non-positive price for {symbol}: {price}")
        return price

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        data = await self._public(KLINES_ENDPOINT, {"symbol": symbol, "interval": interval, "limit": limit})
        if not isinstance(data, list):
            raise MarketDataError(f"Bad klines payload for {symbol}: {data!r}")
        try:
            candles = [parse_kline(row) for row in data]
        except (IndexError, TypeError, ValueError) as e:
            raise MarketDataError(f"Malformed kline for {symbol}: {e}") from e
        candles.sort(key=lambda c: c.open_time)
        return candles

    async def get_account_balances(self) -> Dict[str, AssetBalance]:
        data = await self._signed("GET", ACCOUNT_ENDPOINT, {})
        out: Dict[str, AssetBalance] = {}
        for b in (data or {}).get("balances", []):
            free = float(b.get("free") or 0.0)
            locked = float(b.get("locked") or 0.0)
            if free > 0 or locked > 0:
                out[str(b["asset"])] = {"free": free, "locked": locked}
        return out

    async def place_order(self, symbol: str, side: Side, quantity: float, price: float) -> OrderAck:
        params = {
            "symbol": symbol,
            "side": side,
            "type": "LIMIT",
            "timeInForce": "GTC",
            "quantity": f"{quantity:.6f}",
            "price": f"{price:.8f}",
        }
        data = await self._signed("POST", ORDER_ENDPOINT, params)
        order_id = (data or {}).get("orderId")
        if order_id is None:
            # Accepted HTTP response without an order id is not an accepted order.
            raise RequestError(ORDER_ENDPOINT, ValueError(f"no orderId in response: {data!r}"), 1)
        return OrderAck(order_id=str(order_id), status=str(data.get("status", "NEW")))

    async def get_order_status(self, symbol: str, order_id: str) -> str:
        data = await self._signed("GET", ORDER_ENDPOINT, {"symbol": symbol, "orderId": order_id})
        status = (data or {}).get("status")
        if not status:
            raise MarketDataError(f"No status for order {order_id} on {symbol}: {data!r}")
        return str(status)
