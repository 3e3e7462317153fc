from __future__ import annotations

import itertools
import math
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from tradebot.config import SimulatedExchangeConfig
from tradebot.errors import MarketDataError
from tradebot.providers.base import FILLED, AssetBalance, ExchangeClient
from tradebot.schemas import Candle, OrderAck, Side, TradingPair


_HOUR_MS = 3_600_000


@dataclass
class _SymbolSim:
    candles: List[Candle] = field(default_factory=list)


@dataclass
class _SimOrder:
    symbol: str
    side: Side
    quantity: float
    price: float
    status: str = "NEW"


class SimulatedExchange(ExchangeClient):
    """
    Geometric random walk market plus an in-memory account. Useful for dry runs and tests.

    Every `get_candles` call appends one new hourly candle. Orders report FILLED on their
    first status query, at which point the simulated account balances move.
    """

    def __init__(
        self,
        cfg: SimulatedExchangeConfig,
        pairs: List[TradingPair],
        balances: Optional[Mapping[str, float]] = None,
        *,
        start_time_ms: Optional[int] = None,
    ):
        self._cfg = cfg
        self._rng = random.Random(cfg.seed)
        self._pairs = {p.symbol: p for p in pairs}
        self._state: Dict[str, _SymbolSim] = {}
        self._orders: Dict[str, _SimOrder] = {}
        self._ids = itertools.count(1)
        self._balances: Dict[str, float] = {k: float(v) for k, v in (balances or {}).items()}
        now = int(time.time() * 1000) if start_time_ms is None else int(start_time_ms)
        self._start_ms = now - now % _HOUR_MS

    def _ensure(self, symbol: str) -> _SymbolSim:
        if symbol not in self._pairs:
            raise MarketDataError(f"Unknown symbol: {symbol}")
        st = self._state.get(symbol)
        if st is None:
            st = _SymbolSim()
            self._state[symbol] = st
        return st

    def _step(self, symbol: str, st: _SymbolSim) -> Candle:
        if st.candles:
            open_ = st.candles[-1].close
            open_time = st.candles[-1].open_time + _HOUR_MS
        else:
            open_ = float(self._cfg.start_prices.get(symbol, self._cfg.start_price))
            open_time = self._start_ms

        # dt=1 step; r ~ N(drift, vol)
        r = float(self._rng.gauss(mu=self._cfg.drift, sigma=self._cfg.volatility))
        close = max(1e-8, open_ * math.exp(r))
        wick = abs(self._rng.gauss(0.0, self._cfg.volatility / 2))
        candle = Candle(
            open_time=open_time,
            open=open_,
            high=max(open_, close) * (1 + wick),
            low=min(open_, close) * (1 - wick),
            close=close,
            volume=self._rng.uniform(50.0, 150.0),
        )
        st.candles.append(candle)
        return candle

    async def get_current_price(self, symbol: str) -> float:
        st = self._ensure(symbol)
        if not st.candles:
            self._step(symbol, st)
        return float(st.candles[-1].close)

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        st = self._ensure(symbol)
        while len(st.candles) < limit:
            self._step(symbol, st)
        self._step(symbol, st)
        del st.candles[: -max(limit, 1)]
        return list(st.candles[-limit:])

    async def get_account_balances(self) -> Dict[str, AssetBalance]:
        return {asset: {"free": amount, "locked": 0.0} for asset, amount in self._balances.items() if amount > 0}

    async def place_order(self, symbol: str, side: Side, quantity: float, price: float) -> OrderAck:
        self._ensure(symbol)
        order_id = str(next(self._ids))
        self._orders[order_id] = _SimOrder(symbol=symbol, side=side, quantity=float(quantity), price=float(price))
        return OrderAck(order_id=order_id, status="NEW")

    async def get_order_status(self, symbol: str, order_id: str) -> str:
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol:
            raise MarketDataError(f"Unknown order {order_id} on {symbol}")
        if order.status != FILLED:
            order.status = FILLED
            self._settle(order)
        return order.status

    def _settle(self, order: _SimOrder) -> None:
        pair = self._pairs[order.symbol]
        notional = order.quantity * order.price
        sign = 1.0 if order.side == "BUY" else -1.0
        self._balances[pair.base_asset] = self._balances.get(pair.base_asset, 0.0) + sign * order.quantity
        self._balances[pair.quote_asset] = self._balances.get(pair.quote_asset, 0.0) - sign * notional
