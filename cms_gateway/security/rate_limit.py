from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional


@dataclass
class _Window:
    count: int
    started_at: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter:
    """
    In-memory fixed-window request limiter keyed by client identity.

    Each client's window starts with its first request and lasts
    `window_seconds`; the (max_requests + 1)th request inside a window is
    rejected. Nothing is persisted across restarts.
    """

    def __init__(
        self,
        max_requests: int = 600,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            max_requests: Requests allowed per client per window (default: 600)
            window_seconds: Window length in seconds (default: 60)
            clock: Monotonic time source (injectable for tests)
        """
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self._max = int(max_requests)
        self._window = float(window_seconds)
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._next_sweep = clock() + self._window

    @property
    def limit(self) -> int:
        return self._max

    @property
    def window_seconds(self) -> float:
        return self._window

    def hit(self, identifier: str) -> RateDecision:
        """
        Count one request for `identifier` and decide whether it may proceed.

        Runs without awaiting, so under a single event loop two requests can
        never interleave inside the read-modify-write below.
        """
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)

        key = identifier or "_anon"
        window = self._windows.get(key)
        if window is None or now - window.started_at >= self._window:
            window = _Window(count=0, started_at=now)
            self._windows[key] = window

        window.count += 1
        reset = max(0, math.ceil(window.started_at + self._window - now))
        if window.count > self._max:
            return RateDecision(allowed=False, limit=self._max, remaining=0, reset_seconds=reset)
        return RateDecision(allowed=True, limit=self._max, remaining=self._max - window.count, reset_seconds=reset)

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        # Drop clients whose window has elapsed; they are recreated on their next request.
        expired: List[str] = [k for k, w in self._windows.items() if now - w.started_at >= self._window]
        for k in expired:
            del self._windows[k]
        self._next_sweep = now + self._window


def resolve_client_address(remote_addr: Optional[str], forwarded_for: Optional[str], trusted_hops: int) -> str:
    """
    Resolve the client address, trusting at most `trusted_hops` reverse proxies.

    The chain is read from the nearest hop outwards: the socket peer first, then
    `X-Forwarded-For` entries right to left. With one trusted hop the peer is a
    proxy we own, so the rightmost forwarded entry is the client.
    """
    chain: List[str] = [remote_addr or ""]
    if trusted_hops > 0 and forwarded_for:
        entries = [x.strip() for x in forwarded_for.split(",") if x.strip()]
        chain.extend(reversed(entries))
    idx = min(max(0, trusted_hops), len(chain) - 1)
    return chain[idx] or "_anon"


def rate_limit_headers(decision: RateDecision, window_seconds: float) -> Dict[str, str]:
    """IETF draft-7 `RateLimit` / `RateLimit-Policy` headers."""
    return {
        "RateLimit-Policy": f"{decision.limit};w={int(window_seconds)}",
        "RateLimit": f"limit={decision.limit}, remaining={decision.remaining}, reset={decision.reset_seconds}",
    }
