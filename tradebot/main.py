from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from tradebot.config import Config, load_config, validate_for_startup
from tradebot.engine import Engine
from tradebot.logging_utils import setup_logging
from tradebot.notifier import LogNotifier, Notifier, TelegramNotifier
from tradebot.positions import PositionManager
from tradebot.providers.base import ExchangeClient
from tradebot.providers.binance import BinanceExchange
from tradebot.providers.simulated import SimulatedExchange
from tradebot.requester import Requester
from tradebot.state import TradingState
from tradebot.state_store import StateStore
from tradebot.ws import WSManager


ROOT = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = (ROOT.parent / "config" / "config.yaml").resolve()
log = logging.getLogger("uvicorn.error")


def _config_path() -> Path:
    p = os.getenv("TRADEBOT_CONFIG")
    if not p:
        return DEFAULT_CONFIG_PATH
    return Path(p).expanduser().resolve()


def build_exchange(cfg: Config, requester: Requester) -> ExchangeClient:
    if cfg.exchange.type == "simulated":
        return SimulatedExchange(cfg.exchange.simulated, cfg.pairs(), cfg.initial_balance)
    if cfg.exchange.type == "binance":
        return BinanceExchange(cfg.exchange.binance, requester)
    raise ValueError(f"Unsupported exchange: {cfg.exchange.type}")


def build_notifier(cfg: Config, requester: Requester) -> Notifier:
    if cfg.notifier.telegram.enabled:
        return TelegramNotifier(cfg.notifier.telegram, requester)
    return LogNotifier()


def build_requester(cfg: Config) -> Requester:
    return Requester(cfg.requests, proxy=cfg.exchange.binance.proxy)


def create_app(
    cfg: Optional[Config] = None,
    *,
    exchange: Optional[ExchangeClient] = None,
    notifier: Optional[Notifier] = None,
    run_loop: bool = True,
) -> FastAPI:
    if cfg is None:
        load_dotenv()
        cfg = load_config(_config_path())
    validate_for_startup(cfg)
    setup_logging(cfg.logging.level, cfg.logging.file)

    requester = build_requester(cfg)
    exchange = exchange or build_exchange(cfg, requester)
    notifier = notifier or build_notifier(cfg, requester)
    ws = WSManager()

    state = TradingState.initial(cfg.initial_balance, cfg.app.history_limit)
    manager = PositionManager(
        exchange,
        state,
        take_profit_pct=cfg.trading.take_profit_pct,
        stop_loss_pct=cfg.trading.stop_loss_pct,
        store=StateStore(cfg.app.state_path),
    )
    engine = Engine(cfg=cfg, exchange=exchange, manager=manager, notifier=notifier, ws=ws)

    app = FastAPI(title="Trading Bot", version="0.1.0")
    app.state.cfg = cfg
    app.state.ws = ws
    app.state.engine = engine

    @app.on_event("startup")
    async def _startup() -> None:
        await engine.startup(start_loop=run_loop)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await engine.shutdown("server shutdown")
        await exchange.aclose()
        await notifier.aclose()
        await requester.aclose()

    @app.get("/api/snapshot")
    async def snapshot() -> dict:
        return engine.snapshot()

    @app.get("/api/health")
    async def health() -> dict:
        return engine.health()

    @app.post("/api/tick")
    async def tick() -> dict:
        return {"ran": await engine.run_tick()}

    @app.get("/api/ws_clients")
    async def ws_clients() -> dict:
        return await ws.stats()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await ws.connect(websocket)
        log.info("WS connected: %s (clients=%s)", websocket.client, await ws.count())
        try:
            await ws.send(websocket, {"type": "snapshot", "data": engine.snapshot()})
            # Engine broadcasts from its own task; receiving only detects disconnects.
            while True:
                try:
                    await asyncio.wait_for(websocket.receive_text(), timeout=60.0)
                except asyncio.TimeoutError:
                    pass
        except WebSocketDisconnect:
            await ws.disconnect(websocket)
            log.info("WS disconnected: %s (clients=%s)", websocket.client, await ws.count())
        except Exception:
            await ws.disconnect(websocket)
            log.exception("WS error: %s", websocket.client)

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(
        "tradebot.main:create_app",
        factory=True,
        host=os.getenv("TRADEBOT_HOST", "127.0.0.1"),
        port=int(os.getenv("TRADEBOT_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
