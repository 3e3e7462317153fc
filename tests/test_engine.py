import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Sequence
from unittest.mock import AsyncMock

import pytest

from conftest import FakeExchange, candles_from_closes, request_error
from tradebot.config import Config
from tradebot.engine import Engine
from tradebot.positions import PositionManager
from tradebot.schemas import Candle, Decision, Signal
from tradebot.state import TradingState
from tradebot.state_store import StateStore
from tradebot.strategies.base import Strategy
from tradebot.ws import WSManager


class FixedStrategy(Strategy):
    def __init__(self, decisions: Dict[str, Decision], confidence: float = 90.0):
        self.decisions = decisions
        self.confidence = confidence

    def evaluate(self, symbol: str, candles: Sequence[Candle]) -> Signal:
        decision = self.decisions.get(symbol, "HOLD")
        confidence = self.confidence if decision != "HOLD" else 0.0
        return Signal(symbol, decision, confidence, candles[-1].close)


class ManualClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _config(tmp_path, **app) -> Config:
    return Config.model_validate(
        {
            "app": {
                "interval_seconds": 0.01,
                "state_path": str(tmp_path / "state.json"),
                "notify_signals": False,
                "trading_pairs": [
                    {"symbol": "BNBUSDT", "base_asset": "BNB", "quote_asset": "USDT"},
                    {"symbol": "BTCBNB", "base_asset": "BTC", "quote_asset": "BNB"},
                ],
                **app,
            },
            "initial_balance": {"BNB": 1.0, "USDT": 1000.0},
        }
    )


def _exchange() -> FakeExchange:
    ex = FakeExchange(prices={"BNBUSDT": 600.0, "BTCBNB": 100.0})
    ex.candles["BNBUSDT"] = candles_from_closes([600.0] * 40)
    ex.candles["BTCBNB"] = candles_from_closes([100.0] * 40)
    return ex


def _engine(tmp_path, exchange, strategy=None, clock=None, **app):
    cfg = _config(tmp_path, **app)
    manager = PositionManager(
        exchange,
        TradingState.initial(cfg.initial_balance, cfg.app.history_limit),
        take_profit_pct=cfg.trading.take_profit_pct,
        stop_loss_pct=cfg.trading.stop_loss_pct,
        store=StateStore(cfg.app.state_path),
    )
    notifier = AsyncMock()
    notifier.send = AsyncMock(return_value=True)
    ws = WSManager()
    ws.broadcast = AsyncMock(return_value=0)
    kwargs = {"clock": clock} if clock is not None else {}
    engine = Engine(cfg, exchange, manager, notifier, ws, strategy, **kwargs)
    return engine, notifier, ws


def _broadcast_types(ws):
    return [c.args[0]["type"] for c in ws.broadcast.await_args_list]


@pytest.mark.asyncio
async def test_tick_with_hold_signals_persists_and_reports_tick(tmp_path):
    exchange = _exchange()
    engine, notifier, ws = _engine(tmp_path, exchange, FixedStrategy({}))

    assert await engine.run_tick() is True
    assert exchange.placed == []
    assert (tmp_path / "state.json").exists()
    assert _broadcast_types(ws).count("signal") == 2
    assert _broadcast_types(ws)[-1] == "tick"
    assert engine.health()["tick_count"] == 1
    assert set(engine.snapshot()["last_signals"]) == {"BNBUSDT", "BTCBNB"}


@pytest.mark.asyncio
async def test_buy_signal_sizes_order_by_amount_asset(tmp_path):
    exchange = _exchange()
    engine, notifier, _ = _engine(tmp_path, exchange, FixedStrategy({"BNBUSDT": "BUY", "BTCBNB": "BUY"}))

    await engine.run_tick()

    by_symbol = {o["symbol"]: o for o in exchange.placed}
    # base is the amount asset: quantity is the amount itself
    assert by_symbol["BNBUSDT"]["quantity"] == pytest.approx(0.1)
    # quote is the amount asset: amount / price
    assert by_symbol["BTCBNB"]["quantity"] == pytest.approx(0.001)
    assert len(engine.manager.state.open_positions) == 2
    assert any("BUY Order Placed" in c.args[0] for c in notifier.send.await_args_list)


@pytest.mark.asyncio
async def test_signal_below_threshold_is_not_traded(tmp_path):
    exchange = _exchange()
    engine, _, _ = _engine(tmp_path, exchange, FixedStrategy({"BNBUSDT": "BUY"}, confidence=60.0))
    await engine.run_tick()
    assert exchange.placed == []


@pytest.mark.asyncio
async def test_sell_signal_sells_at_most_available(tmp_path):
    exchange = _exchange()
    engine, _, _ = _engine(tmp_path, exchange, FixedStrategy({"BNBUSDT": "SELL"}))
    await engine.manager.sync_balances({"BNB": {"free": 0.05, "locked": 0.0}})

    await engine.run_tick()
    assert exchange.placed[0]["side"] == "SELL"
    assert exchange.placed[0]["quantity"] == pytest.approx(0.05)


@pytest.mark.asyncio
async def test_sell_signal_without_balance_is_skipped(tmp_path):
    exchange = _exchange()
    engine, notifier, _ = _engine(tmp_path, exchange, FixedStrategy({"BTCBNB": "SELL"}))

    await engine.run_tick()
    assert exchange.placed == []
    assert any("Insufficient Balance" in c.args[0] for c in notifier.send.await_args_list)


@pytest.mark.asyncio
async def test_insufficient_quote_is_reported_not_raised(tmp_path):
    exchange = _exchange()
    engine, notifier, _ = _engine(
        tmp_path, exchange, FixedStrategy({"BNBUSDT": "BUY"})
    )
    await engine.manager.sync_balances({"USDT": {"free": 10.0, "locked": 0.0}})

    assert await engine.run_tick() is True
    assert exchange.placed == []
    assert any("Insufficient Balance" in c.args[0] for c in notifier.send.await_args_list)


@pytest.mark.asyncio
async def test_failed_order_submission_is_contained(tmp_path):
    exchange = _exchange()
    exchange.fail_place = request_error()
    engine, notifier, _ = _engine(tmp_path, exchange, FixedStrategy({"BNBUSDT": "BUY"}))

    assert await engine.run_tick() is True
    assert engine.manager.state.open_positions == []
    assert any("Error in Trading Bot" in c.args[0] for c in notifier.send.await_args_list)


@pytest.mark.asyncio
async def test_one_failing_pair_does_not_stop_the_others(tmp_path):
    class Exploding(FixedStrategy):
        def evaluate(self, symbol, candles):
            if symbol == "BTCBNB":
                raise RuntimeError("indicator blew up")
            return super().evaluate(symbol, candles)

    exchange = _exchange()
    engine, notifier, ws = _engine(tmp_path, exchange, Exploding({"BNBUSDT": "BUY"}))

    assert await engine.run_tick() is True
    assert [o["symbol"] for o in exchange.placed] == ["BNBUSDT"]
    health = engine.health()
    assert "indicator blew up" in health["last_error"]["BTCBNB"]
    assert health["last_error"]["BNBUSDT"] is None
    assert "error" in _broadcast_types(ws)


@pytest.mark.asyncio
async def test_missing_candles_skip_the_pair(tmp_path):
    exchange = _exchange()
    exchange.candles["BTCBNB"] = []
    engine, notifier, _ = _engine(tmp_path, exchange, FixedStrategy({}))

    assert await engine.run_tick() is True
    assert "MarketDataError" in engine.health()["last_error"]["BTCBNB"]
    assert "BNBUSDT" in engine.snapshot()["last_signals"]


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(tmp_path):
    gate = asyncio.Event()

    class BlockingExchange(FakeExchange):
        async def get_candles(self, symbol, interval, limit):
            await gate.wait()
            return await super().get_candles(symbol, interval, limit)

    exchange = BlockingExchange(prices={"BNBUSDT": 600.0, "BTCBNB": 100.0})
    exchange.candles["BNBUSDT"] = candles_from_closes([600.0] * 40)
    exchange.candles["BTCBNB"] = candles_from_closes([100.0] * 40)
    engine, _, _ = _engine(tmp_path, exchange, FixedStrategy({}))

    first = asyncio.create_task(engine.run_tick())
    await asyncio.sleep(0)
    assert engine.health()["tick_running"] is True
    assert await engine.run_tick() is False

    gate.set()
    assert await first is True
    assert engine.health()["tick_count"] == 1
    assert await engine.run_tick() is True


@pytest.mark.asyncio
async def test_fills_and_exits_flow_through_ticks(tmp_path):
    exchange = _exchange()
    engine, notifier, ws = _engine(tmp_path, exchange, FixedStrategy({"BNBUSDT": "BUY"}))
    await engine.run_tick()
    order_id = exchange.placed[0]["id"]

    engine.strategy = FixedStrategy({})
    exchange.statuses[order_id] = "FILLED"
    exchange.prices["BNBUSDT"] = 700.0
    await engine.run_tick()

    # filled on reconcile, then take-profit submitted in the same tick
    kinds = [c.args[0].get("kind") for c in ws.broadcast.await_args_list if c.args[0]["type"] == "lifecycle"]
    assert kinds == ["opened", "entry_filled", "exit_submitted"]
    exit_order = exchange.placed[-1]
    assert exit_order["side"] == "SELL"

    exchange.statuses[exit_order["id"]] = "FILLED"
    await engine.run_tick()
    perf = engine.manager.state.performance
    assert perf.profitable_trades == 1
    assert perf.total_profit_loss == pytest.approx(0.1 * 100.0)
    assert any("Take Profit Executed" in c.args[0] for c in notifier.send.await_args_list)


@pytest.mark.asyncio
async def test_report_sent_once_per_interval(tmp_path):
    clock = ManualClock()
    exchange = _exchange()
    engine, notifier, _ = _engine(tmp_path, exchange, FixedStrategy({}), clock=clock)
    await engine.startup(start_loop=False)

    def reports():
        return sum("Performance Report" in c.args[0] for c in notifier.send.await_args_list)

    await engine.run_tick()
    assert reports() == 0

    clock.now += timedelta(hours=6)
    await engine.run_tick()
    assert reports() == 1

    clock.now += timedelta(hours=1)
    await engine.run_tick()
    assert reports() == 1


@pytest.mark.asyncio
async def test_report_values_balances_in_report_currency(tmp_path):
    exchange = _exchange()
    engine, notifier, _ = _engine(tmp_path, exchange, FixedStrategy({}))
    await engine.run_tick()
    await engine.send_report()
    text = notifier.send.await_args_list[-1].args[0]
    # 1 BNB at 600 USDT plus 1000 USDT
    assert "Total Value: 1600.00 USDT" in text


@pytest.mark.asyncio
async def test_startup_restores_syncs_and_announces(tmp_path):
    exchange = _exchange()
    exchange.balances = {"BNB": {"free": 3.0, "locked": 0.0}}
    engine, notifier, _ = _engine(tmp_path, exchange, FixedStrategy({}), sync_balances_on_start=True)

    await engine.startup(start_loop=False)
    assert engine.manager.state.balances.get("BNB") == 3.0
    assert engine.manager.state.started_at is not None
    assert "Trading Bot Started" in notifier.send.await_args_list[0].args[0]


@pytest.mark.asyncio
async def test_loop_runs_and_stops_cleanly(tmp_path):
    exchange = _exchange()
    engine, notifier, _ = _engine(tmp_path, exchange, FixedStrategy({}))

    engine.start()
    for _ in range(200):
        if engine.health()["tick_count"] >= 2:
            break
        await asyncio.sleep(0.01)
    await engine.shutdown("test")

    assert engine.health()["tick_count"] >= 2
    assert engine.health()["engine_task_running"] is False
    assert "Bot shutting down" in notifier.send.await_args_list[-1].args[0]
    assert (tmp_path / "state.json").exists()


@pytest.mark.asyncio
async def test_startup_survives_malformed_snapshot(tmp_path):
    (tmp_path / "state.json").write_text('{"open_positions": [1], "balances": [["USDT", 5]]}', encoding="utf-8")
    exchange = _exchange()
    engine, notifier, _ = _engine(tmp_path, exchange, FixedStrategy({}))

    await engine.startup(start_loop=False)
    assert engine.manager.state.balances.as_dict() == {"BNB": 1.0, "USDT": 1000.0}
    assert "Trading Bot Started" in notifier.send.await_args_list[0].args[0]
