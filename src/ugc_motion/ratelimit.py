from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Literal, Optional

from typing_extensions import Protocol


class Clock(Protocol):
    def now(self) -> float:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Monotonic wall clock used outside tests."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


@dataclass(frozen=True)
class RateLimitDecision:
    status: Literal["allowed", "rejected"]
    tokens: int
    retry_after_s: Optional[float] = None
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.status == "allowed"


class RateLimiter:
    """Pluggable rate limiter interface."""

    def allow(self, tokens: int = 1) -> bool:
        return self.request(tokens=tokens).allowed

    def request(self, tokens: int = 1) -> RateLimitDecision:
        raise NotImplementedError()

    def acquire(self, tokens: int = 1) -> float:
        """Block until `tokens` are accepted; return the seconds spent waiting."""
        raise NotImplementedError()


class SlidingWindowRateLimiter(RateLimiter):
    """In-memory sliding-window limiter: at most `max_requests` per `window_s`.

    Not distributed. One instance guards one external service in one process.
    """

    def __init__(self, max_requests: int, window_s: float, clock: Optional[Clock] = None) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        self.max_requests = int(max_requests)
        self.window_s = float(window_s)
        self.clock: Clock = clock or SystemClock()
        self._accepted: Deque[float] = deque()
        self._lock = threading.Lock()

    def request(self, tokens: int = 1) -> RateLimitDecision:
        if tokens > self.max_requests:
            return RateLimitDecision(status="rejected", tokens=tokens, reason="exceeds_capacity")
        with self._lock:
            now = self.clock.now()
            self._trim(now)
            if len(self._accepted) + tokens <= self.max_requests:
                for _ in range(tokens):
                    self._accepted.append(now)
                return RateLimitDecision(status="allowed", tokens=tokens)
            # the oldest entry that has to expire before `tokens` fit
            blocking = self._accepted[len(self._accepted) + tokens - self.max_requests - 1]
            retry_after = max(0.0, blocking + self.window_s - now)
            return RateLimitDecision(
                status="rejected",
                tokens=tokens,
                retry_after_s=retry_after,
                reason="rate_limited",
            )

    def acquire(self, tokens: int = 1) -> float:
        waited = 0.0
        while True:
            decision = self.request(tokens)
            if decision.allowed:
                return waited
            if decision.retry_after_s is None:
                raise ValueError(f"Cannot acquire {tokens} tokens from a limiter of {self.max_requests}")
            self.clock.sleep(decision.retry_after_s)
            waited += decision.retry_after_s

    def _trim(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._accepted and self._accepted[0] <= cutoff:
            self._accepted.popleft()


__all__ = [
    "Clock",
    "SystemClock",
    "RateLimitDecision",
    "RateLimiter",
    "SlidingWindowRateLimiter",
]
