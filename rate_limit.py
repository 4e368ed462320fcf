"""
Fixed-window request limiter.

Each key gets its own window, opened by the key's first request, so
windows of different callers are phased independently. The table lives
in process memory: it is best effort and not shared between workers.
A multi-instance deployment would need a shared counter store with
atomic increment-and-expire instead.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request

from errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    started_at: float
    count: int = 0


class RateLimiter:
    def __init__(
        self,
        window_ms: int = 60000,
        max_requests: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window_ms / 1000.0
        self.max_requests = max_requests
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()
        self._sweeper: Optional[asyncio.Task] = None

    def check(self, limit: int, key: str):
        """
        Count one request for `key`.
        Raises RateLimited once the post-increment count for the key's
        current window reaches `limit`, so `limit - 1` requests get through.
        """
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window:
                self._sweep_locked(now)

            entry = self._windows.get(key)
            if entry is None or now - entry.started_at >= self.window:
                entry = _Window(started_at=now)
                self._windows[key] = entry
            entry.count += 1
            count = entry.count
            retry_after = max(0.0, entry.started_at + self.window - now)

        if count >= limit:
            raise RateLimited(headers={"Retry-After": str(int(retry_after) + 1)})

    def hit(self, key: str):
        self.check(self.max_requests, key)

    def sweep(self) -> int:
        """Drop windows that have elapsed. Returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [k for k, w in self._windows.items() if now - w.started_at >= self.window]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now
        return len(expired)

    def __len__(self):
        return len(self._windows)

    async def _sweep_forever(self):
        while True:
            await asyncio.sleep(self.window)
            removed = self.sweep()
            if removed:
                logger.debug(f"Rate limiter swept {removed} expired keys")

    def start(self):
        """Start the periodic sweep. Must be called from a running event loop."""
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def close(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        with self._lock:
            self._windows.clear()


def client_ip(request: Request) -> str:
    """Socket peer, or the first X-Forwarded-For hop when running behind a trusted proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and request.app.state.settings.TRUST_FORWARDED_FOR:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def rate_limit(request: Request):
    """Dependency for sensitive endpoints, keyed by client IP."""
    if not request.app.state.settings.RATE_LIMIT_ENABLED:
        return
    limiter: RateLimiter = request.app.state.limiter
    try:
        limiter.hit(f"{request.url.path}:{client_ip(request)}")
    except RateLimited:
        logger.warning(f"Rate limit exceeded on {request.url.path} for {client_ip(request)}")
        raise
