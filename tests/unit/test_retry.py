from __future__ import annotations

from types import SimpleNamespace

import pytest

from ugc_motion.retry import RetryPolicy, exponential_backoff, retry_call


def test_backoff_is_deterministic_without_jitter() -> None:
    backoff = exponential_backoff(base=1.0, factor=2.0, jitter=0.0, max_backoff=10.0)
    assert [backoff(n) for n in range(0, 6)] == [0.0, 1.0, 2.0, 4.0, 8.0, 10.0]


def test_backoff_with_jitter_stays_in_bounds() -> None:
    backoff = exponential_backoff(base=1.0, jitter=0.5, max_backoff=10.0)
    for attempt in range(1, 8):
        assert 0.0 <= backoff(attempt) <= 10.0


def test_retry_call_returns_after_transient_failures() -> None:
    calls = {"n": 0}
    sleeps: list[float] = []
    retried: list[int] = []

    def _flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConnectionError("reset")
        return "ok"

    result = retry_call(
        _flaky,
        attempts=3,
        backoff_fn=exponential_backoff(jitter=0.0),
        on_retry=lambda attempt, exc: retried.append(attempt),
        sleep=sleeps.append,
    )

    assert result == "ok"
    assert sleeps == [1.0, 2.0]
    assert retried == [1, 2]


def test_retry_call_raises_last_exception() -> None:
    sleeps: list[float] = []

    def _always() -> None:
        raise ValueError("still broken")

    with pytest.raises(ValueError, match="still broken"):
        retry_call(_always, attempts=2, sleep=sleeps.append)
    assert len(sleeps) == 1


def test_retry_call_does_not_retry_other_exceptions() -> None:
    calls = {"n": 0}

    def _fatal() -> None:
        calls["n"] += 1
        raise KeyError("x")

    with pytest.raises(KeyError):
        retry_call(_fatal, attempts=5, sleep=lambda _: None, retry_on=(ConnectionError,))
    assert calls["n"] == 1


def test_failing_on_retry_hook_does_not_abort() -> None:
    outcomes = iter([RuntimeError("a"), "done"])

    def _fn() -> str:
        item = next(outcomes)
        if isinstance(item, Exception):
            raise item
        return item

    def _bad_hook(attempt: int, exc: Exception) -> None:
        raise RuntimeError("hook broke")

    assert retry_call(_fn, attempts=2, on_retry=_bad_hook, sleep=lambda _: None) == "done"


def test_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        retry_call(lambda: None, attempts=0)


def test_policy_backoff_is_clamped_between_min_and_max() -> None:
    policy = RetryPolicy(attempts=5, min_backoff_s=1.0, max_backoff_s=10.0)
    backoff = policy.backoff()
    assert [backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_policy_from_config_and_call() -> None:
    config = SimpleNamespace(retry_attempts=2, retry_min_backoff_s=0.5, retry_max_backoff_s=3.0)
    policy = RetryPolicy.from_config(config)
    assert policy == RetryPolicy(attempts=2, min_backoff_s=0.5, max_backoff_s=3.0)

    sleeps: list[float] = []
    with pytest.raises(OSError):
        policy.call(lambda: (_ for _ in ()).throw(OSError("disk")), sleep=sleeps.append)
    assert sleeps == [0.5]
