import threading

import pytest

from labgate.config.settings import RetrySettings
from labgate.core.retry import RetryCancelled, RetryPolicy


def test_retries_transient_errors_with_exponential_backoff():
    sleeps: list[float] = []
    calls = {"n": 0}

    def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConnectionRefusedError("relay down")
        return "ok"

    policy = RetryPolicy(max_attempts=4, base_delay_seconds=0.5, max_delay_seconds=8.0)
    assert policy.run(flaky, sleep=sleeps.append) == "ok"
    assert calls["n"] == 3
    assert sleeps == [0.5, 1.0]


def test_gives_up_after_max_attempts_with_last_error():
    calls = {"n": 0}

    def always_down():
        calls["n"] += 1
        raise TimeoutError(f"attempt {calls['n']}")

    policy = RetryPolicy(max_attempts=2, base_delay_seconds=0, retry_on=(TimeoutError,))
    with pytest.raises(TimeoutError, match="attempt 3"):
        policy.run(always_down, sleep=lambda _s: None)
    assert calls["n"] == 3


def test_non_retryable_errors_propagate_immediately():
    calls = {"n": 0}

    def broken():
        calls["n"] += 1
        raise ValueError("bad url")

    with pytest.raises(ValueError):
        RetryPolicy().run(broken, sleep=lambda _s: None)
    assert calls["n"] == 1


def test_delay_is_capped():
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0)
    assert [policy.delay_for(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_cancel_stops_retry_loop():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(RetryCancelled):
        RetryPolicy().run(lambda: "never", cancel=cancel)

    cancel = threading.Event()

    def fail_and_cancel():
        cancel.set()
        raise OSError("down")

    with pytest.raises(RetryCancelled):
        RetryPolicy(base_delay_seconds=30).run(fail_and_cancel, cancel=cancel)


def test_from_settings():
    policy = RetryPolicy.from_settings(RetrySettings(max_attempts=1, base_delay_seconds=0.1, max_delay_seconds=0.2))
    assert policy.max_attempts == 1
    assert policy.delay_for(3) == 0.2
    assert policy.retry_on == (OSError,)
