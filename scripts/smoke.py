from __future__ import annotations

import asyncio
import json
import os

import httpx


async def main() -> None:
    base_url = os.getenv("TRADEBOT_URL", "http://127.0.0.1:8000")
    async with httpx.AsyncClient(base_url=base_url) as client:
        r = await client.get("/api/health")
        r.raise_for_status()
        print("health ok:", r.json().get("pairs"))

        r = await client.get("/api/snapshot")
        r.raise_for_status()
        snap = r.json()
        print("balances:", snap.get("balances"))
        print("open positions:", len(snap.get("open_positions", [])))


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception as e:
        print(json.dumps({"smoke_error": str(e)}, ensure_ascii=False))
