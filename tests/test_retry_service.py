from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from settlebot.services.retry import (
    RetryAttempt,
    backoff_delay_ms,
    parse_retry_after_seconds,
    retry_with_backoff,
)


class _TransientError(Exception):
    pass


def test_parse_retry_after_seconds_supports_http_date() -> None:
    dt = datetime.now(UTC) + timedelta(seconds=2)
    value = parse_retry_after_seconds(dt.strftime("%a, %d %b %Y %H:%M:%S GMT"))
    assert value is not None
    assert 0 <= value <= 2.5


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("3", 3.0), ("0.5", 0.5), ("", None), (None, None), ("-1", None), ("soon", None)],
)
def test_parse_retry_after_seconds_values(raw: str | None, expected: float | None) -> None:
    assert parse_retry_after_seconds(raw) == expected


def test_backoff_delay_is_capped() -> None:
    prng = random.Random(7)
    delays = [
        backoff_delay_ms(attempt, base_delay_ms=100, max_delay_ms=1000, prng=prng)
        for attempt in range(1, 10)
    ]
    assert all(0 < delay <= 1000 for delay in delays)


def test_retry_with_backoff_honors_max_total_sleep() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise _TransientError("x")

    with pytest.raises(_TransientError):
        retry_with_backoff(
            _fn,
            max_attempts=5,
            base_delay_ms=100,
            max_delay_ms=1000,
            jitter_seed=1,
            retry_on_exceptions=(_TransientError,),
            sleep_fn=lambda _x: None,
            max_total_sleep_seconds=0.15,
        )
    assert calls["n"] == 2


def test_retry_after_header_takes_priority() -> None:
    calls = {"n": 0}
    slept: list[float] = []
    attempts: list[RetryAttempt] = []

    def _fn() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise _TransientError("429")
        return "ok"

    out = retry_with_backoff(
        _fn,
        max_attempts=3,
        base_delay_ms=100,
        max_delay_ms=5000,
        jitter_seed=3,
        retry_on_exceptions=(_TransientError,),
        sleep_fn=slept.append,
        on_retry=attempts.append,
        retry_after_getter=lambda _exc: "2",
    )
    assert out == "ok"
    assert slept == [2.0]
    assert attempts[0].used_retry_after is True
    assert attempts[0].error_type == "_TransientError"


def test_non_retryable_errors_propagate_immediately() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise KeyError("nope")

    with pytest.raises(KeyError):
        retry_with_backoff(
            _fn,
            max_attempts=5,
            base_delay_ms=1,
            max_delay_ms=1,
            jitter_seed=1,
            retry_on_exceptions=(_TransientError,),
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 1


def test_invalid_attempt_count_is_rejected() -> None:
    with pytest.raises(ValueError):
        retry_with_backoff(
            lambda: None,
            max_attempts=0,
            base_delay_ms=1,
            max_delay_ms=1,
            jitter_seed=1,
            retry_on_exceptions=(_TransientError,),
        )
