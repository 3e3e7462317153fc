from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception_type, stop_after_attempt

from tradebot.config import RequestsConfig
from tradebot.errors import RequestError


log = logging.getLogger(__name__)

Params = Dict[str, Any]

_RETRYABLE = (httpx.HTTPError, asyncio.TimeoutError, ValueError)


@dataclass(frozen=True)
class RequestSpec:
    method: str
    url: str
    params: Optional[Params] = None
    headers: Optional[Dict[str, str]] = None
    json: Any = None
    # Applied to a copy of `params` before every attempt (signed requests need a fresh timestamp).
    signer: Optional[Callable[[Params], Params]] = None


class Requester:
    """
    Generic resilient call primitive: per-endpoint minimum spacing plus bounded
    exponential-backoff retry. Knows nothing about what it is calling.
    """

    def __init__(
        self,
        cfg: RequestsConfig,
        client: Optional[httpx.AsyncClient] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        proxy: Optional[str] = None,
    ) -> None:
        self._cfg = cfg
        self._client = client or httpx.AsyncClient(proxy=proxy, timeout=httpx.Timeout(cfg.timeout_seconds))
        self._owns_client = client is None
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._last_call: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    def min_interval(self, endpoint: str) -> float:
        intervals = self._cfg.min_interval_seconds
        return float(intervals.get(endpoint, intervals.get("default", 0.0)))

    def backoff_delay(self, attempt: int) -> float:
        delay = self._cfg.initial_delay_seconds * (2 ** (attempt - 1))
        if self._cfg.jitter_seconds > 0:
            delay += self._rng.uniform(0.0, self._cfg.jitter_seconds)
        return delay

    async def _throttle(self, endpoint: str) -> None:
        # Only callers of the same endpoint queue behind each other.
        async with self._locks[endpoint]:
            last = self._last_call.get(endpoint)
            if last is not None:
                wait = max(0.0, last + self.min_interval(endpoint) - self._clock())
                if wait > 0:
                    log.debug("Rate limiting: waiting %.3fs for %s", wait, endpoint)
                    await self._sleep(wait)
            self._last_call[endpoint] = self._clock()

    async def _attempt(self, spec: RequestSpec) -> Any:
        params = dict(spec.params or {})
        if spec.signer is not None:
            params = spec.signer(params)
        r = await asyncio.wait_for(
            self._client.request(
                spec.method,
                spec.url,
                params=params or None,
                headers=spec.headers,
                json=spec.json,
            ),
            timeout=self._cfg.timeout_seconds,
        )
        r.raise_for_status()
        return r.json()

    async def execute(self, endpoint: str, spec: RequestSpec) -> Any:
        attempts = self._cfg.max_attempts

        def _log_failure(retry_state: RetryCallState) -> None:
            e = retry_state.outcome.exception() if retry_state.outcome else None
            log.warning(
                "Attempt %d/%d for %s failed: %s",
                retry_state.attempt_number,
                attempts,
                endpoint,
                _describe(e) if e is not None else "unknown",
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=lambda rs: self.backoff_delay(rs.attempt_number),
            retry=retry_if_exception_type(_RETRYABLE),
            after=_log_failure,
            sleep=self._sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._throttle(endpoint)
                    result = await self._attempt(spec)
        except RetryError as e:
            raise RequestError(endpoint, e.last_attempt.exception(), attempts) from e
        return result

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _describe(e: BaseException) -> str:
    if isinstance(e, httpx.HTTPStatusError):
        body = e.response.text[:200]
        return f"HTTP {e.response.status_code}: {body}"
    if isinstance(e, asyncio.TimeoutError):
        return "timed out"
    return f"{type(e).__name__}: {e}"
