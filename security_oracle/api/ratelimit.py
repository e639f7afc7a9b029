# security_oracle/api/ratelimit.py
"""
Per-IP rate limiting for the whole API.

Sliding window of 60 seconds, in memory. Applied before payment checks so
that unpaid probing is throttled too.
"""
import logging
import threading
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from security_oracle.x402.middleware import get_client_ip

logger = logging.getLogger(__name__)


class RateLimiter:
    """Thread-safe sliding window limiter keyed by client IP."""

    def __init__(
        self,
        requests_per_minute: int = 60,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.requests_per_minute = requests_per_minute
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, client_ip: str) -> Tuple[bool, int]:
        """
        Count one request from client_ip.

        Returns:
            Tuple of (allowed, remaining requests in the window).
        """
        now = self._clock()
        window_start = now - self.window_seconds
        with self._lock:
            window = self._windows[client_ip]
            while window and window[0] <= window_start:
                window.popleft()

            if len(window) >= self.requests_per_minute:
                return False, 0

            window.append(now)
            if len(self._windows) > 10_000:
                self._drop_idle(window_start)
            return True, self.requests_per_minute - len(window)

    def _drop_idle(self, window_start: float) -> None:
        idle = [ip for ip, window in self._windows.items() if not window or window[-1] <= window_start]
        for ip in idle:
            del self._windows[ip]

    def headers(self, remaining: int) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.requests_per_minute),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(self.window_seconds),
        }

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, limiter: RateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:
        client_ip = get_client_ip(request)
        allowed, remaining = self.limiter.hit(client_ip)
        if not allowed:
            logger.warning(f"Rate limit exceeded for {client_ip}: {request.method} {request.url.path}")
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too Many Requests",
                    "message": f"Rate limit of {self.limiter.requests_per_minute} requests per minute exceeded",
                },
                headers=self.limiter.headers(0),
            )

        response = await call_next(request)
        for header, value in self.limiter.headers(remaining).items():
            response.headers[header] = value
        return response
