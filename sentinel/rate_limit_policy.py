"""Client-side request throttling for the Coinbase Exchange REST API.

Each endpoint key gets its own sliding window. ``CoinbaseClient`` awaits
``RateLimitManager.acquire`` before every request so a bot polling many pairs
stays under the exchange's per-second limits instead of collecting 429s.
"""
import asyncio
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional


@dataclass(frozen=True)
class RateLimitQuota:
    """At most ``requests_per_window`` requests per ``window_seconds``."""
    requests_per_window: int
    window_seconds: float = 1.0


@dataclass
class RateLimitState:
    """Sliding window of request timestamps (monotonic clock) for one endpoint."""
    quota: RateLimitQuota
    request_times: Deque[float] = field(default_factory=deque)

    def _expire(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        while self.request_times and self.request_times[0] <= cutoff:
            self.request_times.popleft()

    def is_allowed(self) -> bool:
        self._expire(time.monotonic())
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(time.monotonic())

    def time_until_allowed(self) -> float:
        """Seconds until the oldest request leaves the window; 0 if allowed now."""
        now = time.monotonic()
        self._expire(now)
        if len(self.request_times) < self.quota.requests_per_window:
            return 0.0
        return max(0.0, self.request_times[0] + self.quota.window_seconds - now)


_PRODUCT_PATH = re.compile(r"^/products/[^/]+")
_ORDER_PATH = re.compile(r"^/orders/[^/]+$")


def endpoint_key(path: str) -> str:
    """Collapse concrete request paths onto quota keys.

    >>> endpoint_key("/products/BTC-USD/ticker")
    '/products/{id}/ticker'
    """
    path = path.split("?", 1)[0]
    if _ORDER_PATH.match(path):
        return "/orders/{id}"
    return _PRODUCT_PATH.sub("/products/{id}", path)


class RateLimitManager:
    """Per-endpoint quotas; endpoints without their own quota use ``default``."""

    # Coinbase Exchange: private endpoints 15 req/s, public 10 req/s
    DEFAULT_QUOTAS = {
        "/orders": RateLimitQuota(15),
        "/orders/{id}": RateLimitQuota(15),
        "/accounts": RateLimitQuota(15),
        "default": RateLimitQuota(10),
    }

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None):
        self.quotas = dict(quotas or self.DEFAULT_QUOTAS)
        self.states: Dict[str, RateLimitState] = {}

    @classmethod
    def from_rates(cls, orders_per_second: int, default_per_second: int) -> "RateLimitManager":
        private = RateLimitQuota(orders_per_second)
        return cls({
            "/orders": private,
            "/orders/{id}": private,
            "/accounts": private,
            "default": RateLimitQuota(default_per_second),
        })

    def _get_state(self, endpoint: str) -> RateLimitState:
        state = self.states.get(endpoint)
        if state is None:
            state = self.states[endpoint] = RateLimitState(self.quotas.get(endpoint, self.quotas.get("default")))
        return state

    def is_allowed(self, endpoint: str) -> bool:
        return self._get_state(endpoint).is_allowed()

    def record_request(self, endpoint: str) -> None:
        self._get_state(endpoint).record_request()

    def time_until_allowed(self, endpoint: str) -> float:
        return self._get_state(endpoint).time_until_allowed()

    async def acquire(self, endpoint: str, max_wait: float = 60.0) -> bool:
        """Take a request slot for ``endpoint``, sleeping until one frees up.

        Returns:
            False without recording anything when the slot would take longer
            than ``max_wait`` seconds
        """
        state = self._get_state(endpoint)
        deadline = time.monotonic() + max_wait
        while not state.is_allowed():
            wait_time = state.time_until_allowed()
            if time.monotonic() + wait_time > deadline:
                return False
            await asyncio.sleep(wait_time)
        state.record_request()
        return True
