from __future__ import annotations

import asyncio
import logging
import math
import traceback
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from tradebot import messages
from tradebot.config import Config
from tradebot.errors import InsufficientBalanceError, MarketDataError, PersistenceError, RequestError, TradeBotError
from tradebot.ledger import EPSILON
from tradebot.notifier import Notifier
from tradebot.positions import PositionManager
from tradebot.providers.base import ExchangeClient
from tradebot.schemas import LifecycleEvent, Signal, TradingPair
from tradebot.state import position_to_dict
from tradebot.strategies.base import Strategy
from tradebot.strategies.weighted import WeightedScoreStrategy
from tradebot.ws import WSManager


log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _floor(value: float, decimals: int) -> float:
    factor = 10 ** decimals
    # Absorb float noise such as 0.3 * 10**6 == 299999.99999999994.
    return math.floor(value * factor + 1e-6) / factor


def signal_to_dict(signal: Signal) -> Dict[str, Any]:
    return asdict(signal)


class Engine:
    """
    Tick scheduler. One tick: reconcile orders, check exits, evaluate every pair
    concurrently, send the periodic report, persist.
    """

    def __init__(
        self,
        cfg: Config,
        exchange: ExchangeClient,
        manager: PositionManager,
        notifier: Notifier,
        ws: WSManager,
        strategy: Optional[Strategy] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.cfg = cfg
        self.exchange = exchange
        self.manager = manager
        self.notifier = notifier
        self.ws = ws
        self.strategy: Strategy = strategy or WeightedScoreStrategy(cfg.trading)
        self.pairs: List[TradingPair] = cfg.pairs()
        self._clock = clock

        self._task: Optional[asyncio.Task[None]] = None
        self._stop = asyncio.Event()
        self._tick_running = False
        self._tick_count = 0
        self._last_tick_ts: Optional[str] = None
        self._last_prices: Dict[str, float] = {}
        self._last_signals: Dict[str, Signal] = {}
        symbols = [p.symbol for p in self.pairs]
        self._last_ok_ts: Dict[str, Optional[str]] = {s: None for s in symbols}
        self._last_err: Dict[str, Optional[str]] = {s: None for s in symbols}

    # ---- lifecycle ----

    async def startup(self, start_loop: bool = True) -> None:
        await self.manager.restore()

        if self.cfg.app.sync_balances_on_start:
            try:
                balances = await self.exchange.get_account_balances()
                await self.manager.sync_balances(balances)
            except TradeBotError as e:
                log.error("Balance sync failed, keeping ledger balances: %s", e)

        now = self._clock()
        await self.manager.mark_started(now)
        if self.manager.state.last_report_at is None:
            await self.manager.mark_report_sent(now)

        await self.notifier.send(
            messages.startup_message(self.cfg, self.pairs, self.manager.state.balances.as_dict())
        )
        if start_loop:
            self.start()

    async def shutdown(self, reason: str = "shutdown") -> None:
        await self.stop()
        try:
            await self.manager.persist()
        except PersistenceError as e:
            log.error("Final state save failed: %s", e)
        await self.notifier.send(messages.shutdown_message(reason))

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
        self._task = None

    # ---- status ----

    def health(self) -> dict[str, Any]:
        return {
            "ts": self._clock().isoformat(),
            "engine_task_running": self._task is not None and not self._task.done(),
            "tick_running": self._tick_running,
            "pairs": [p.symbol for p in self.pairs],
            "last_tick_ts": self._last_tick_ts,
            "tick_count": self._tick_count,
            "last_ok_ts": self._last_ok_ts,
            "last_error": self._last_err,
        }

    def snapshot(self) -> dict[str, Any]:
        state = self.manager.state
        assets = {a for a, _ in state.balances} | {p.base_asset for p in self.pairs} | {p.quote_asset for p in self.pairs}
        return {
            "ts": self._clock().isoformat(),
            "exchange": self.cfg.exchange.type,
            "pairs": [p.symbol for p in self.pairs],
            "balances": state.balances.as_dict(),
            "available": {a: self.manager.available(a) for a in sorted(assets)},
            "performance": asdict(state.performance),
            "open_positions": [position_to_dict(p) for p in state.open_positions],
            "recent_history": [position_to_dict(p) for p in state.history[-10:]],
            "history_count": len(state.history),
            "started_at": state.started_at.isoformat() if state.started_at else None,
            "last_prices": dict(self._last_prices),
            "last_signals": {s: signal_to_dict(sig) for s, sig in self._last_signals.items()},
            "health": self.health(),
        }

    # ---- tick ----

    async def run_tick(self) -> bool:
        """False when another tick is still running; the request is dropped."""
        if self._tick_running:
            log.info("Tick already in progress, skipping")
            return False
        self._tick_running = True
        try:
            await self._tick()
        finally:
            self._tick_running = False
        return True

    async def _tick(self) -> None:
        try:
            await self._publish_events(await self.manager.reconcile_order_status())
        except Exception as e:
            await self._report_error("order status check", e)

        try:
            await self._publish_events(await self.manager.check_exit_conditions())
        except Exception as e:
            await self._report_error("take-profit/stop-loss check", e)

        await asyncio.gather(*[self._evaluate_pair(p) for p in self.pairs])

        try:
            await self._maybe_send_report()
        except Exception as e:
            await self._report_error("performance report", e)

        try:
            await self.manager.persist()
        except PersistenceError as e:
            await self._report_error("state save", e)

        self._tick_count += 1
        self._last_tick_ts = self._clock().isoformat()
        await self.ws.broadcast(
            {
                "type": "tick",
                "ts": self._last_tick_ts,
                "tick_count": self._tick_count,
                "balances": self.manager.state.balances.as_dict(),
                "performance": asdict(self.manager.state.performance),
                "open_positions": len(self.manager.state.open_positions),
            }
        )

    async def _evaluate_pair(self, pair: TradingPair) -> None:
        symbol = pair.symbol
        try:
            candles = await self.exchange.get_candles(
                symbol, self.cfg.trading.candle_interval, self.cfg.trading.candle_limit
            )
            if not candles:
                raise MarketDataError(f"No candle data for {symbol}")
            price = await self.exchange.get_current_price(symbol)
            if not price or price <= 0:
                raise MarketDataError(f"No current price for {symbol}")
            self._last_prices[symbol] = price

            signal = self.strategy.evaluate(symbol, candles)
            self._last_signals[symbol] = signal
            self._last_ok_ts[symbol] = self._clock().isoformat()
            self._last_err[symbol] = None
            log.info(
                "%s: %s confidence=%.2f (bull=%.1f bear=%.1f) price=%s",
                symbol,
                signal.decision,
                signal.confidence,
                signal.bullish_score,
                signal.bearish_score,
                price,
            )

            await self.ws.broadcast({"type": "signal", "symbol": symbol, "price": price, "signal": signal_to_dict(signal)})
            if self.cfg.app.notify_signals:
                await self.notifier.send(
                    messages.signal_message(signal, self.cfg.trading.take_profit_pct, self.cfg.trading.stop_loss_pct)
                )

            if signal.decision != "HOLD" and signal.confidence >= self.cfg.trading.confidence_threshold:
                await self._act(pair, signal, price)
        except MarketDataError as e:
            self._last_err[symbol] = f"{type(e).__name__}: {e}"
            log.warning("Skipping %s: %s", symbol, e)
            await self._broadcast_error(symbol, e)
        except Exception as e:
            self._last_err[symbol] = f"{type(e).__name__}: {e}"
            await self._report_error(symbol, e)

    def order_quantity(self, pair: TradingPair, price: float) -> float:
        """`trading_amount` is denominated in `amount_asset`; convert to base quantity."""
        amount = self.cfg.trading.trading_amount
        asset = self.cfg.trading.amount_asset
        if pair.base_asset == asset:
            return amount
        if pair.quote_asset == asset:
            return amount / price
        return amount

    async def _act(self, pair: TradingPair, signal: Signal, price: float) -> None:
        price = round(price, 8)
        quantity = self.order_quantity(pair, price)

        if signal.decision == "SELL":
            available = self.manager.available(pair.base_asset)
            if available <= EPSILON:
                log.warning("SELL signal for %s but no %s balance to sell", pair.symbol, pair.base_asset)
                await self.notifier.send(
                    messages.insufficient_balance_message(pair.symbol, "SELL", f"no {pair.base_asset} balance to sell")
                )
                return
            quantity = min(available, quantity)

        quantity = _floor(quantity, 6)
        if quantity <= 0:
            log.warning("Order size for %s rounds to zero, skipping", pair.symbol)
            return

        try:
            position = await self.manager.open_position(pair, signal.decision, quantity, price)
        except InsufficientBalanceError as e:
            log.warning("Insufficient balance for %s %s: %s", signal.decision, pair.symbol, e)
            await self.notifier.send(messages.insufficient_balance_message(pair.symbol, signal.decision, str(e)))
            return
        except RequestError as e:
            log.error("%s order for %s failed: %s", signal.decision, pair.symbol, e)
            await self.notifier.send(messages.error_message(f"{signal.decision} {pair.symbol}", e))
            return

        await self.ws.broadcast({"type": "lifecycle", "kind": "opened", "price": price, "position": position_to_dict(position)})
        await self.notifier.send(messages.order_message(position))

    async def _publish_events(self, events: List[LifecycleEvent]) -> None:
        perf = self.manager.state.performance
        for event in events:
            await self.ws.broadcast(
                {
                    "type": "lifecycle",
                    "kind": event.kind,
                    "price": event.price,
                    "pnl": event.pnl,
                    "message": event.message,
                    "position": position_to_dict(event.position),
                }
            )
            text = messages.lifecycle_message(event, perf)
            if text:
                await self.notifier.send(text)

    async def _maybe_send_report(self) -> None:
        now = self._clock()
        last = self.manager.state.last_report_at
        if last is not None and now - last < timedelta(hours=self.cfg.app.report_interval_hours):
            return
        await self.send_report()
        await self.manager.mark_report_sent(now)

    async def send_report(self) -> None:
        currency = self.cfg.app.report_currency
        state = self.manager.state
        prices = dict(self._last_prices)
        for asset, _ in state.balances:
            symbol = f"{asset}{currency}"
            if asset == currency or symbol in prices or f"{currency}{asset}" in prices:
                continue
            try:
                prices[symbol] = await self.exchange.get_current_price(symbol)
            except TradeBotError as e:
                log.debug("No %s price for the report: %s", symbol, e)

        total, per_asset = self.manager.portfolio_value(prices, currency)
        await self.notifier.send(
            messages.report_message(
                per_asset,
                state.balances.as_dict(),
                total,
                currency,
                state.performance,
                len(state.open_positions),
                len(state.history),
                state.started_at,
            )
        )
        log.info("Performance report sent (total value %.2f %s)", total, currency)

    async def _broadcast_error(self, where: str, e: BaseException) -> None:
        tb = "".join(traceback.format_exception(type(e), e, e.__traceback__))[-2000:]
        await self.ws.broadcast(
            {
                "type": "error",
                "symbol": where,
                "ts": self._clock().isoformat(),
                "error": f"{type(e).__name__}: {e}",
                "trace": tb,
            }
        )

    async def _report_error(self, where: str, e: BaseException) -> None:
        log.error("Error in %s", where, exc_info=e)
        await self._broadcast_error(where, e)
        await self.notifier.send(messages.error_message(where, e))

    async def _run_loop(self) -> None:
        interval = float(self.cfg.app.interval_seconds)

        while not self._stop.is_set():
            start = asyncio.get_event_loop().time()

            try:
                await self.run_tick()
            except Exception as e:
                await self._report_error("main loop", e)

            elapsed = asyncio.get_event_loop().time() - start
            sleep_for = max(0.0, interval - elapsed)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass
