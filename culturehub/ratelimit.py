"""
culturehub/ratelimit.py
-----------------------------------------------------------------------------
In-process sliding-window rate limiting, exposed as FastAPI dependencies.

One limiter instance per request group (auth, mutations, documents) lives
on ``app.state.limiters``; clients are keyed by their address.  State is
per process, which matches the single-process deployment model of the
JSON store.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import Request

from culturehub.errors import ApiError

TOO_MANY_REQUESTS = "Too many requests, please try again later"


class SlidingWindowLimiter:
    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str) -> bool:
        """Record a request for ``key``; False if it exceeds the budget."""
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def cleanup(self) -> None:
        """Forget clients with no hits inside the current window."""
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            for key in [k for k, v in self._hits.items() if not v or v[-1] <= cutoff]:
                del self._hits[key]


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def limit(group: str) -> Callable[[Request], None]:
    """
    Build a dependency enforcing the ``group`` limiter from ``app.state``.

    Raises
    ------
    ApiError(429) once the client exhausts its budget for the window.
    """

    def _dependency(request: Request) -> None:
        limiter: SlidingWindowLimiter = request.app.state.limiters[group]
        if not limiter.hit(client_key(request)):
            raise ApiError(429, TOO_MANY_REQUESTS)

    _dependency.__name__ = f"rate_limit_{group}"
    return _dependency
