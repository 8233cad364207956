from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from timelock.services.retry import RetryAttempt, RetryPolicy, parse_retry_after_seconds, retry_with_backoff


class _RateError(Exception):
    pass


class _FatalError(Exception):
    pass


def test_parse_retry_after_seconds_supports_http_date() -> None:
    dt = datetime.now(UTC) + timedelta(seconds=2)
    value = parse_retry_after_seconds(dt.strftime("%a, %d %b %Y %H:%M:%S GMT"))
    assert value is not None
    assert 0 <= value <= 2.5


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("3", 3.0), (" 1.5 ", 1.5), ("-1", None), ("", None), (None, None), ("soon", None)],
)
def test_parse_retry_after_seconds_numeric(raw: str | None, expected: float | None) -> None:
    assert parse_retry_after_seconds(raw) == expected


def test_retry_with_backoff_honors_max_total_sleep() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise _RateError("x")

    with pytest.raises(_RateError):
        retry_with_backoff(
            _fn,
            policy=RetryPolicy(
                max_attempts=5,
                base_delay_ms=100,
                max_delay_ms=1000,
                jitter_seed=1,
                max_total_sleep_seconds=0.15,
            ),
            retry_on=(_RateError,),
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 2


def test_retry_after_header_takes_priority() -> None:
    calls = {"n": 0}
    slept: list[float] = []
    attempts: list[RetryAttempt] = []

    def _fn() -> str:
        calls["n"] += 1
        if calls["n"] == 1:
            raise _RateError("429")
        return "ok"

    out = retry_with_backoff(
        _fn,
        policy=RetryPolicy(max_attempts=3, base_delay_ms=100, max_delay_ms=5000, jitter_seed=3),
        retry_on=(_RateError,),
        sleep_fn=slept.append,
        on_retry=attempts.append,
        retry_after_getter=lambda _exc: "2",
    )
    assert out == "ok"
    assert slept == [2.0]
    assert attempts == [
        RetryAttempt(attempt=1, delay_ms=2000, error_type="_RateError", used_retry_after=True)
    ]


def test_non_retryable_error_is_raised_immediately() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise _FatalError("no")

    with pytest.raises(_FatalError):
        retry_with_backoff(
            _fn,
            policy=RetryPolicy(max_attempts=4),
            retry_on=lambda exc: isinstance(exc, _RateError),
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 1


def test_gives_up_after_max_attempts() -> None:
    calls = {"n": 0}

    def _fn() -> None:
        calls["n"] += 1
        raise _RateError("still busy")

    with pytest.raises(_RateError):
        retry_with_backoff(
            _fn,
            policy=RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=1),
            retry_on=(_RateError,),
            sleep_fn=lambda _x: None,
        )
    assert calls["n"] == 3


def test_invalid_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        retry_with_backoff(lambda: None, policy=RetryPolicy(max_attempts=0), retry_on=(_RateError,))
