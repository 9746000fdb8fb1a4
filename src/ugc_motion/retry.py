from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

LOG = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(
    base: float = 1.0,
    factor: float = 2.0,
    jitter: float = 0.1,
    max_backoff: float = 10.0,
) -> Callable[[int], float]:
    """Return a function that computes backoff delay for attempt index (1-based).

    deterministic when `jitter` is 0.0; otherwise adds uniform jitter in
    +/- jitter*delay. The result never exceeds `max_backoff`.
    """

    def _delay(attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        delay = base * (factor ** (attempt - 1))
        delay = min(delay, max_backoff)
        if jitter and jitter > 0:
            # uniform jitter in [-jitter*delay, +jitter*delay]
            delta = (random.random() * 2 - 1) * jitter * delay
            delay = min(max(0.0, delay + delta), max_backoff)
        return delay

    return _delay


def retry_call(
    fn: Callable[[], T],
    attempts: int = 3,
    backoff_fn: Optional[Callable[[int], float]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """Call `fn()` with retries. Returns fn() result or raises last exception.

    The function sleeps according to `backoff_fn(attempt)` between retries.
    `attempts` is the total number of tries including the first.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    last_exc: Optional[BaseException] = None
    backoff_fn = backoff_fn or exponential_backoff()
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            last_exc = e
            if attempt == attempts:
                break
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception:
                    LOG.debug("on_retry hook failed", exc_info=True)
            sleep(backoff_fn(attempt))
    assert last_exc is not None
    raise last_exc


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with exponential backoff clamped to [min, max] seconds."""

    attempts: int = 3
    min_backoff_s: float = 1.0
    max_backoff_s: float = 10.0

    @classmethod
    def from_config(cls, config) -> RetryPolicy:
        return cls(
            attempts=config.retry_attempts,
            min_backoff_s=config.retry_min_backoff_s,
            max_backoff_s=config.retry_max_backoff_s,
        )

    def backoff(self) -> Callable[[int], float]:
        return exponential_backoff(base=self.min_backoff_s, jitter=0.0, max_backoff=self.max_backoff_s)

    def call(
        self,
        fn: Callable[[], T],
        *,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[int, Exception], None]] = None,
    ) -> T:
        return retry_call(fn, attempts=self.attempts, backoff_fn=self.backoff(), on_retry=on_retry, sleep=sleep)
