"""Per-client request rate limiting.

Two sliding-window limiters run in one middleware: a general limiter over
every request and a stricter one over /api/auth that only counts failed
requests, so successful logins never lock a client out.
"""

import logging
import math
import time
from collections import deque
from typing import Deque, Dict, Iterable, Optional

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .errors import error_response

logger = logging.getLogger(__name__)

AUTH_PREFIX = '/api/auth'

class SlidingWindowLimiter:
    """Counts hits per key over a trailing window.

    Keys whose hits have all aged out are dropped, either when the key is next
    seen or by a sweep that runs at most once per window.
    """

    def __init__(self, max_requests: int, window_seconds: float):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.hits: Dict[str, Deque[float]] = {}
        self.last_sweep: Optional[float] = None

    def _prune(self, key: str, now: float) -> Optional[Deque[float]]:
        hits = self.hits.get(key)
        if hits is None:
            return None
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()
        if not hits:
            del self.hits[key]
            return None
        return hits

    def retry_after(self, key: str, now: Optional[float] = None) -> Optional[int]:
        """Seconds until key may retry, or None when it is under the limit."""
        now = time.monotonic() if now is None else now
        hits = self._prune(key, now)
        if hits is None or len(hits) < self.max_requests:
            return None
        return max(1, math.ceil(hits[0] + self.window_seconds - now))

    def record(self, key: str, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        if self.last_sweep is None:
            self.last_sweep = now
        elif now - self.last_sweep >= self.window_seconds:
            self.sweep(now)

        hits = self._prune(key, now)
        if hits is None:
            hits = self.hits[key] = deque()
        hits.append(now)

    def sweep(self, now: float) -> None:
        """Drop every key with no hits left in the window."""
        for key in list(self.hits):
            self._prune(key, now)
        self.last_sweep = now

    def reset(self) -> None:
        self.hits.clear()
        self.last_sweep = None

def client_key(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """Address to rate limit a request by.

    X-Forwarded-For is only honoured when the direct peer is a trusted proxy.
    """
    peer = request.client.host if request.client else 'unknown'
    forwarded = request.headers.get('x-forwarded-for')
    if forwarded and peer in trusted_proxies:
        return forwarded.split(',')[0].strip() or peer
    return peer

def limited(retry_after: int, message: str):
    return error_response(
        message,
        status.HTTP_429_TOO_MANY_REQUESTS,
        'RateLimitError',
        headers={'Retry-After': str(retry_after)},
        retryAfter=retry_after
    )

class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject clients that exceed the general or auth failure limits."""

    def __init__(self, app, limiter: SlidingWindowLimiter, auth_limiter: SlidingWindowLimiter,
                 trusted_proxies: Iterable[str] = ()):
        super().__init__(app)
        self.limiter = limiter
        self.auth_limiter = auth_limiter
        self.trusted_proxies = frozenset(trusted_proxies)

    async def dispatch(self, request: Request, call_next):
        key = client_key(request, self.trusted_proxies)

        retry = self.limiter.retry_after(key)
        if retry is not None:
            logger.warning(f"Rate limit exceeded for {key} on {request.url.path}")
            return limited(retry, 'Too many requests from this IP, please try again later.')
        self.limiter.record(key)

        if not request.url.path.startswith(AUTH_PREFIX):
            return await call_next(request)

        retry = self.auth_limiter.retry_after(key)
        if retry is not None:
            logger.warning(f"Auth rate limit exceeded for {key}")
            return limited(retry, 'Too many authentication attempts, please try again later.')

        response = await call_next(request)
        if response.status_code >= 400:
            self.auth_limiter.record(key)
        return response

__all__ = ['SlidingWindowLimiter', 'RateLimitMiddleware', 'client_key']
