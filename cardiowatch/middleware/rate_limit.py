"""In-memory sliding-window rate limiter.

Keyed per client IP.  Provider webhooks are limited separately from the
app API so a burst of device deliveries cannot lock a patient out of the
dashboard on a shared NAT address.  Sufficient for single-instance
deployments; the window state is not shared between workers.
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from cardiowatch.config import Settings, get_settings

EXEMPT_PATHS: frozenset[str] = frozenset({"/health"})
WEBHOOK_PREFIX = "/api/v1/webhooks/"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP, per-bucket sliding window rate limiter."""

    def __init__(self, app: Any, settings: Settings | None = None, window_seconds: int = 60) -> None:
        super().__init__(app)
        s = settings or get_settings()
        self._max_requests = s.rate_limit_per_minute
        self._window_seconds = window_seconds
        # (bucket, ip) -> request timestamps, oldest first
        self._requests: dict[tuple[str, str], deque[float]] = defaultdict(deque)

    @staticmethod
    def _client_ip(request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _prune(self, key: tuple[str, str], now: float) -> deque[float]:
        window = self._requests[key]
        cutoff = now - self._window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        bucket = "webhook" if path.startswith(WEBHOOK_PREFIX) else "api"
        key = (bucket, self._client_ip(request))
        now = time.monotonic()
        window = self._prune(key, now)

        if len(window) >= self._max_requests:
            retry_after = int(self._window_seconds - (now - window[0]))
            return Response(
                content='{"detail":"Rate limit exceeded"}',
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(max(retry_after, 1))},
            )

        window.append(now)
        response = await call_next(request)

        remaining = self._max_requests - len(window)
        response.headers["X-RateLimit-Limit"] = str(self._max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(remaining, 0))
        return response
