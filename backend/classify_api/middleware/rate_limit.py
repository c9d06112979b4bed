"""
Classify API Backend — Rate Limiting Middleware
===============================================

What:  Per-IP sliding window rate limiter with a slow-down stage.
How:   Keeps the request timestamps of each IP inside the current window and
       rejects with 429 once the window holds `limit` entries.

Two windows apply:
    - general:  every request except health and docs
                (settings.rate_limit_requests per settings.rate_limit_window)
    - classify: POST /api/v1/classify/image only, counted separately
                (settings.classify_rate_limit_requests per
                settings.classify_rate_limit_window)

    A classify request must pass both windows. Every window is checked before
    any of them records the hit, so a rejected request uses no quota.

Slow-down:
    Requests that pass are also counted in a third window. Once an IP goes
    past settings.slow_down_after requests in settings.slow_down_window, each
    further request waits settings.slow_down_delay_ms more than the previous
    one, up to settings.slow_down_max_delay_ms.

This limiter throttles clients over minutes; the InferenceGateway bounds
concurrent model calls. They are independent.

State is in memory, so limits are per process.
"""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from classify_api.config import settings

logger = logging.getLogger(__name__)

CLASSIFY_PATH = "/api/v1/classify/image"


async def pause(seconds: float) -> None:
    await asyncio.sleep(seconds)


class SlidingWindow:
    """Timestamps per key within the last `window` seconds."""

    def __init__(self, limit: int, window: int):
        self.limit = limit
        self.window = window
        self._hits: Dict[str, List[float]] = defaultdict(list)

    def _live(self, key: str, now: float) -> List[float]:
        window_start = now - self.window
        hits = [ts for ts in self._hits[key] if ts > window_start]
        self._hits[key] = hits
        return hits

    def count(self, key: str, now: float) -> int:
        return len(self._live(key, now))

    def retry_after(self, key: str, now: float) -> Optional[int]:
        """
        None when another hit for `key` fits in the window, otherwise the
        seconds until the oldest hit leaves it. Records nothing.
        """
        hits = self._live(key, now)
        if len(hits) >= self.limit:
            return int(hits[0] + self.window - now) + 1
        return None

    def record(self, key: str, now: float) -> None:
        self._hits[key].append(now)

    def cleanup(self, now: float) -> int:
        window_start = now - self.window
        inactive = [key for key, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for key in inactive:
            del self._hits[key]
        return len(inactive)

    def __len__(self) -> int:
        return len(self._hits)


class SlowDown:
    """Progressive delay once a key goes past `delay_after` hits per window."""

    def __init__(self, delay_after: int, window: int, delay_ms: int, max_delay_ms: int):
        self.delay_after = delay_after
        self.delay_ms = delay_ms
        self.max_delay_ms = max_delay_ms
        self.counter = SlidingWindow(limit=delay_after, window=window)

    @property
    def enabled(self) -> bool:
        return self.delay_after > 0 and self.delay_ms > 0

    def delay_for(self, key: str, now: float) -> float:
        """Record a hit and return the seconds to hold it (0 when under the threshold)."""
        if not self.enabled:
            return 0.0
        self.counter.record(key, now)
        over = self.counter.count(key, now) - self.delay_after
        if over <= 0:
            return 0.0
        return min(over * self.delay_ms, self.max_delay_ms) / 1000


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding window rate limiter.

    Limits default to settings; keyword overrides exist for tests.
    """

    EXCLUDED_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}
    CLEANUP_EVERY = 1000

    def __init__(
        self,
        app,
        requests: Optional[int] = None,
        window: Optional[int] = None,
        classify_requests: Optional[int] = None,
        classify_window: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.general = SlidingWindow(
            requests or settings.rate_limit_requests,
            window or settings.rate_limit_window,
        )
        self.classify = SlidingWindow(
            classify_requests or settings.classify_rate_limit_requests,
            classify_window or settings.classify_rate_limit_window,
        )
        self.slow_down = SlowDown(
            delay_after=settings.slow_down_after,
            window=settings.slow_down_window,
            delay_ms=settings.slow_down_delay_ms,
            max_delay_ms=settings.slow_down_max_delay_ms,
        )
        self._clock = clock
        self._seen = 0

    def _windows_for(self, request: Request) -> List[Tuple[str, SlidingWindow]]:
        windows = [("general", self.general)]
        if request.method == "POST" and request.url.path == CLASSIFY_PATH:
            windows.append(("classify", self.classify))
        return windows

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        # Behind a proxy this is the proxy's address
        client_ip = request.client.host if request.client else "unknown"
        now = self._clock()
        windows = self._windows_for(request)

        for name, window in windows:
            retry_after = window.retry_after(client_ip, now)
            if retry_after is not None:
                logger.warning(
                    "Rate limit (%s) exceeded for IP %s: %d requests in %ds window",
                    name,
                    client_ip,
                    window.limit,
                    window.window,
                )
                return JSONResponse(
                    status_code=429,
                    content={
                        "error": "rate_limit_exceeded",
                        "message": f"Too many requests. Please wait {retry_after} seconds before retrying.",
                        "details": {"retry_after": retry_after, "limit": name},
                    },
                    headers={"Retry-After": str(retry_after)},
                )

        for _, window in windows:
            window.record(client_ip, now)

        self._seen += 1
        if self._seen % self.CLEANUP_EVERY == 0:
            removed = (
                self.general.cleanup(now)
                + self.classify.cleanup(now)
                + self.slow_down.counter.cleanup(now)
            )
            if removed:
                logger.debug("Cleaned up %d inactive IP entries", removed)

        delay = self.slow_down.delay_for(client_ip, now)
        if delay:
            logger.warning("Slowing down IP %s by %.1fs", client_ip, delay)
            await pause(delay)

        return await call_next(request)
