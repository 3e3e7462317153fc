from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from tradebot.errors import InsufficientBalanceError, PersistenceError, TradeBotError
from tradebot.ledger import EPSILON
from tradebot.providers.base import DEAD_ORDER_STATUSES, FILLED, AssetBalance, ExchangeClient
from tradebot.schemas import LifecycleEvent, Position, Side, TradingPair
from tradebot.state import TradingState
from tradebot.state_store import StateStore


log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionManager:
    """
    Owns open positions, history, the balance ledger and performance counters.

    Every mutation happens under one asyncio.Lock; exchange calls are made outside it.
    Balance checks count what is already committed (pending entries, exits in flight and
    submissions still waiting for the exchange) so a later fill can never overdraw the ledger.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        state: TradingState,
        *,
        take_profit_pct: float,
        stop_loss_pct: float,
        store: Optional[StateStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._exchange = exchange
        self._state = state
        self._tp_pct = float(take_profit_pct)
        self._sl_pct = float(stop_loss_pct)
        self._store = store
        self._clock = clock
        self._lock = asyncio.Lock()
        self._inflight: Dict[str, float] = defaultdict(float)

    @property
    def state(self) -> TradingState:
        return self._state

    # ---- balance bookkeeping (caller holds the lock) ----

    def _reserved(self, asset: str) -> float:
        total = self._inflight.get(asset, 0.0)
        for p in self._state.open_positions:
            if p.status == "PENDING":
                if p.side == "BUY" and p.quote_asset == asset:
                    total += p.notional
                elif p.side == "SELL" and p.base_asset == asset:
                    total += p.quantity
            elif p.closing and p.base_asset == asset:
                total += p.quantity
        return total

    def available(self, asset: str) -> float:
        return self._state.balances.get(asset) - self._reserved(asset)

    def _release(self, asset: str, amount: float) -> None:
        left = self._inflight.get(asset, 0.0) - amount
        if left <= EPSILON:
            self._inflight.pop(asset, None)
        else:
            self._inflight[asset] = left

    def _find_open(self, position_id: str) -> Tuple[int, Optional[Position]]:
        for i, p in enumerate(self._state.open_positions):
            if p.id == position_id:
                return i, p
        return -1, None

    def _close(self, index: int, position: Position) -> None:
        del self._state.open_positions[index]
        self._state.archive(position)

    def exit_levels(self, side: Side, price: float) -> Tuple[Optional[float], Optional[float]]:
        if side != "BUY":
            return None, None
        return price * (1 + self._tp_pct / 100.0), price * (1 - self._sl_pct / 100.0)

    # ---- operations ----

    async def open_position(self, pair: TradingPair, side: Side, quantity: float, price: float) -> Position:
        """
        Submit an order and track it as PENDING. Raises InsufficientBalanceError before
        anything is submitted; any submission error propagates with no state change.
        """
        if quantity <= 0 or price <= 0:
            raise ValueError(f"quantity and price must be positive (got {quantity}, {price})")

        if side == "BUY":
            asset, amount = pair.quote_asset, quantity * price
        else:
            asset, amount = pair.base_asset, quantity

        async with self._lock:
            avail = self.available(asset)
            if avail + EPSILON < amount:
                raise InsufficientBalanceError(asset, amount, avail)
            self._inflight[asset] += amount

        try:
            ack = await self._exchange.place_order(pair.symbol, side, quantity, price)
        except BaseException:
            async with self._lock:
                self._release(asset, amount)
            raise

        async with self._lock:
            self._release(asset, amount)
            take_profit, stop_loss = self.exit_levels(side, price)
            position = Position(
                id=ack.order_id,
                symbol=pair.symbol,
                base_asset=pair.base_asset,
                quote_asset=pair.quote_asset,
                side=side,
                quantity=float(quantity),
                entry_price=float(price),
                status="PENDING",
                opened_at=self._clock(),
                take_profit_price=take_profit,
                stop_loss_price=stop_loss,
            )
            self._state.open_positions.append(position)
            self._state.performance.total_trades += 1
            self._state.performance.recompute_win_rate()

        log.info("%s order %s placed for %s: qty=%s price=%s", side, ack.order_id, pair.symbol, quantity, price)
        return position

    async def reconcile_order_status(self) -> List[LifecycleEvent]:
        """
        Ask the exchange about every order we are waiting on and apply confirmed fills.
        Seeing the same FILLED twice changes nothing the second time.
        """
        async with self._lock:
            targets = [
                (p.id, p.symbol, "entry", p.id) for p in self._state.open_positions if p.status == "PENDING"
            ] + [
                (p.id, p.symbol, "exit", str(p.exit_order_id)) for p in self._state.open_positions if p.closing
            ]

        events: List[LifecycleEvent] = []
        for position_id, symbol, leg, order_id in targets:
            try:
                status = await self._exchange.get_order_status(symbol, order_id)
            except TradeBotError as e:
                log.warning("Order status check failed for %s order %s: %s", symbol, order_id, e)
                continue

            async with self._lock:
                event = self._apply_status(position_id, leg, order_id, status)
            if event is not None:
                events.append(event)
        return events

    def _apply_status(self, position_id: str, leg: str, order_id: str, status: str) -> Optional[LifecycleEvent]:
        idx, pos = self._find_open(position_id)
        if pos is None:
            return None
        if leg == "entry":
            return self._apply_entry_status(idx, pos, status)
        if pos.closing and pos.exit_order_id == order_id:
            return self._apply_exit_status(idx, pos, status)
        return None

    def _apply_entry_status(self, idx: int, pos: Position, status: str) -> Optional[LifecycleEvent]:
        if pos.status != "PENDING":
            return None
        now = self._clock()

        if status == FILLED:
            try:
                self._state.balances.apply_fill(pos.base_asset, pos.quote_asset, pos.side, pos.quantity, pos.entry_price)
            except InsufficientBalanceError as e:
                log.error("Fill for %s order %s would overdraw the ledger: %s", pos.symbol, pos.id, e)
                return None
            if pos.side == "BUY":
                filled = replace(pos, status="ACTIVE", filled_at=now)
                self._state.open_positions[idx] = filled
            else:
                filled = replace(pos, status="COMPLETED", filled_at=now, closed_at=now)
                self._close(idx, filled)
            log.info("%s order %s filled for %s", pos.side, pos.id, pos.symbol)
            return LifecycleEvent(kind="entry_filled", position=filled, price=pos.entry_price)

        if status in DEAD_ORDER_STATUSES:
            dead = replace(pos, status="COMPLETED", closed_at=now, exit_reason=f"entry_{status.lower()}")
            self._close(idx, dead)
            log.warning("%s order %s for %s ended as %s without a fill", pos.side, pos.id, pos.symbol, status)
            return LifecycleEvent(kind="entry_cancelled", position=dead, price=pos.entry_price, message=status)

        return None

    def _apply_exit_status(self, idx: int, pos: Position, status: str) -> Optional[LifecycleEvent]:
        exit_price = float(pos.exit_price or 0.0)

        if status == FILLED:
            try:
                self._state.balances.apply_fill(pos.base_asset, pos.quote_asset, "SELL", pos.quantity, exit_price)
            except InsufficientBalanceError as e:
                log.error("Exit fill for %s order %s would overdraw the ledger: %s", pos.symbol, pos.exit_order_id, e)
                return None
            pnl = self.record_realized_pnl(pos, exit_price)
            closed = replace(pos, status="COMPLETED", closed_at=self._clock(), realized_pnl=pnl)
            self._close(idx, closed)
            log.info("Exit %s filled for %s at %s, pnl=%.8f", pos.exit_reason, pos.symbol, exit_price, pnl)
            return LifecycleEvent(kind="exit_filled", position=closed, price=exit_price, pnl=pnl, message=pos.exit_reason)

        if status in DEAD_ORDER_STATUSES:
            # Position is held again; exit conditions are re-checked next tick.
            self._state.open_positions[idx] = replace(pos, exit_order_id=None, exit_price=None, exit_reason=None)
            log.warning("Exit order %s for %s ended as %s", pos.exit_order_id, pos.symbol, status)
        return None

    def record_realized_pnl(self, position: Position, exit_price: float) -> float:
        """Caller holds the lock (or owns the manager exclusively)."""
        profit = (float(exit_price) - position.entry_price) * position.quantity
        perf = self._state.performance
        perf.total_profit_loss += profit
        if profit > 0:
            perf.profitable_trades += 1
        perf.recompute_win_rate()
        return profit

    async def check_exit_conditions(self, prices: Optional[Mapping[str, float]] = None) -> List[LifecycleEvent]:
        """
        Submit a closing SELL for every held BUY whose price crossed take-profit or stop-loss.
        Short balances defer the exit to a later tick.
        """
        async with self._lock:
            candidates = [
                p for p in self._state.open_positions if p.side == "BUY" and p.status == "ACTIVE" and not p.closing
            ]

        events: List[LifecycleEvent] = []
        for pos in candidates:
            price = prices.get(pos.symbol) if prices else None
            if price is None:
                try:
                    price = await self._exchange.get_current_price(pos.symbol)
                except TradeBotError as e:
                    log.warning("No price for %s, exit check skipped: %s", pos.symbol, e)
                    continue

            if pos.take_profit_price is not None and price >= pos.take_profit_price:
                reason = "take_profit"
            elif pos.stop_loss_price is not None and price <= pos.stop_loss_price:
                reason = "stop_loss"
            else:
                continue

            event = await self._submit_exit(pos.id, float(price), reason)
            if event is not None:
                events.append(event)
        return events

    async def _submit_exit(self, position_id: str, price: float, reason: str) -> Optional[LifecycleEvent]:
        async with self._lock:
            _, pos = self._find_open(position_id)
            if pos is None or pos.status != "ACTIVE" or pos.closing:
                return None
            avail = self.available(pos.base_asset)
            if avail + EPSILON < pos.quantity:
                msg = f"{reason}: need {pos.quantity} {pos.base_asset}, have {avail}"
                log.warning("Insufficient balance for %s exit: %s", pos.symbol, msg)
                return LifecycleEvent(kind="exit_deferred", position=pos, price=price, message=msg)
            self._inflight[pos.base_asset] += pos.quantity

        log.info("%s triggered for %s at %s", reason, pos.symbol, price)
        try:
            ack = await self._exchange.place_order(pos.symbol, "SELL", pos.quantity, price)
        except TradeBotError as e:
            async with self._lock:
                self._release(pos.base_asset, pos.quantity)
            log.error("Exit order for %s failed: %s", pos.symbol, e)
            return LifecycleEvent(kind="exit_failed", position=pos, price=price, message=str(e))
        except BaseException:
            async with self._lock:
                self._release(pos.base_asset, pos.quantity)
            raise

        async with self._lock:
            self._release(pos.base_asset, pos.quantity)
            idx, current = self._find_open(position_id)
            if current is None:
                log.error("Position %s vanished while its exit order %s was placed", position_id, ack.order_id)
                return None
            closing = replace(current, exit_order_id=ack.order_id, exit_price=price, exit_reason=reason)
            self._state.open_positions[idx] = closing
        return LifecycleEvent(kind="exit_submitted", position=closing, price=price, message=reason)

    async def sync_balances(self, balances: Mapping[str, AssetBalance]) -> None:
        async with self._lock:
            self._state.balances.replace({asset: float(b.get("free", 0.0)) for asset, b in balances.items()})
        log.info("Ledger synced from exchange balances (%d assets)", len(balances))

    def portfolio_value(self, prices: Mapping[str, float], quote: str) -> Tuple[float, Dict[str, float]]:
        return self._state.balances.value(prices, quote)

    async def mark_report_sent(self, at: datetime) -> None:
        async with self._lock:
            self._state.last_report_at = at

    async def mark_started(self, at: datetime) -> None:
        async with self._lock:
            if self._state.started_at is None:
                self._state.started_at = at

    # ---- persistence ----

    async def persist(self) -> None:
        """Raises PersistenceError; the in-memory state stays authoritative either way."""
        if self._store is None:
            return
        async with self._lock:
            doc = self._state.to_document()
            doc["saved_at"] = self._clock().isoformat()
        self._store.save(doc)

    async def restore(self) -> bool:
        """
        Load the snapshot if there is a usable one. Missing or corrupt snapshots leave the
        initial state in place; startup never fails here.
        """
        if self._store is None:
            return False
        try:
            doc = self._store.load()
        except PersistenceError as e:
            log.error("State snapshot unreadable, starting fresh: %s", e)
            return False
        if doc is None:
            log.info("No state snapshot at %s, starting fresh", self._store.path)
            return False
        try:
            restored = TradingState.from_document(doc, self._state.history_limit)
        except (KeyError, TypeError, ValueError, InsufficientBalanceError) as e:
            log.error("State snapshot invalid, starting fresh: %s", e)
            self._store.quarantine()
            return False

        async with self._lock:
            self._state = restored
            self._inflight.clear()
        log.info(
            "Trading state restored: %d open, %d in history",
            len(restored.open_positions),
            len(restored.history),
        )
        return True
