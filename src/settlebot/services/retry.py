from __future__ import annotations

import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_ms: int
    error_type: str
    used_retry_after: bool = False


def parse_retry_after_seconds(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given as seconds or as an HTTP date."""
    if value is None or not value.strip():
        return None
    candidate = value.strip()
    try:
        seconds = float(candidate)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds >= 0 else None
    try:
        when = parsedate_to_datetime(candidate)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def backoff_delay_ms(
    attempt: int,
    *,
    base_delay_ms: int,
    max_delay_ms: int,
    prng: random.Random,
) -> int:
    """Exponential delay for ``attempt`` (1-based) with +/-50% jitter, capped."""
    ceiling = min(max_delay_ms, base_delay_ms * (2 ** max(0, attempt - 1)))
    return min(max_delay_ms, int(ceiling * (0.5 + prng.random())))


def retry_with_backoff(  # noqa: UP047
    fn: Callable[[], T],
    *,
    max_attempts: int,
    base_delay_ms: int,
    max_delay_ms: int,
    jitter_seed: int,
    retry_on_exceptions: Sequence[type[Exception]],
    sleep_fn: Callable[[float], None] | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
    retry_after_getter: Callable[[Exception], str | None] | None = None,
    max_total_sleep_seconds: float | None = None,
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if base_delay_ms < 0 or max_delay_ms < 0:
        raise ValueError("delay values must be >= 0")

    sleep = sleep_fn or time.sleep
    retryable = tuple(retry_on_exceptions)
    prng = random.Random(jitter_seed)
    slept_s = 0.0
    attempt = 0

    while True:
        attempt += 1
        try:
            return fn()
        except retryable as exc:
            if attempt >= max_attempts:
                raise
            hinted_s = (
                parse_retry_after_seconds(retry_after_getter(exc))
                if retry_after_getter is not None
                else None
            )
            if hinted_s is not None:
                delay_ms = min(max_delay_ms, int(hinted_s * 1000))
            else:
                delay_ms = backoff_delay_ms(
                    attempt,
                    base_delay_ms=base_delay_ms,
                    max_delay_ms=max_delay_ms,
                    prng=prng,
                )
            delay_s = delay_ms / 1000.0
            if max_total_sleep_seconds is not None and slept_s + delay_s > max_total_sleep_seconds:
                raise
            slept_s += delay_s
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        attempt=attempt,
                        delay_ms=delay_ms,
                        error_type=type(exc).__name__,
                        used_retry_after=hinted_s is not None,
                    )
                )
            sleep(delay_s)
