from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Set

from fastapi import WebSocket


log = logging.getLogger(__name__)


def encode_event(msg: Dict[str, Any]) -> str:
    """Serialize an engine event; every frame carries a `ts` so clients can order them."""
    if "ts" not in msg:
        msg = {**msg, "ts": datetime.now(timezone.utc).isoformat()}
    return json.dumps(msg, ensure_ascii=False, default=str)


class WSManager:
    """
    Fan-out of engine events (signal, lifecycle, error, tick) to websocket clients.

    The engine awaits `broadcast` inside its tick, so a client that does not accept a
    frame within `send_timeout` seconds is dropped instead of holding the tick up.
    """

    def __init__(self, send_timeout: float = 5.0) -> None:
        self._lock = asyncio.Lock()
        self._clients: Set[WebSocket] = set()
        self._send_timeout = send_timeout
        self._dropped = 0

    async def count(self) -> int:
        async with self._lock:
            return len(self._clients)

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            return {"clients": len(self._clients), "dropped": self._dropped}

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)

    async def send(self, ws: WebSocket, msg: Dict[str, Any]) -> None:
        await ws.send_text(encode_event(msg))

    async def _deliver(self, ws: WebSocket, payload: str) -> bool:
        try:
            await asyncio.wait_for(ws.send_text(payload), timeout=self._send_timeout)
            return True
        except Exception as e:
            log.debug("Dropping websocket client %s: %s", getattr(ws, "client", None), e)
            async with self._lock:
                if ws in self._clients:
                    self._clients.discard(ws)
                    self._dropped += 1
            return False

    async def broadcast(self, msg: Dict[str, Any]) -> int:
        """Send `msg` to every client; returns how many received it."""
        async with self._lock:
            clients = list(self._clients)
        if not clients:
            return 0

        payload = encode_event(msg)
        delivered = await asyncio.gather(*[self._deliver(c, payload) for c in clients])
        return sum(delivered)
