from __future__ import annotations

import pytest

from chunk_review.infra.rate_limit import backoff_seconds
from chunk_review.infra.rate_limit import parse_retry_after_seconds
from chunk_review.infra.rate_limit import rate_limit_wait_seconds


def test_parse_retry_after_is_case_insensitive() -> None:
    assert parse_retry_after_seconds({"Retry-After": "12"}) == 12
    assert parse_retry_after_seconds({"retry-after": " 3 "}) == 3


@pytest.mark.parametrize("value", ["", "soon", "0", "-4", "Wed, 21 Oct 2015 07:28:00 GMT"])
def test_parse_retry_after_ignores_unusable_values(value: str) -> None:
    assert parse_retry_after_seconds({"retry-after": value}) is None


def test_rate_limit_wait_prefers_hint() -> None:
    assert rate_limit_wait_seconds({"retry-after": "9"}, attempt=3) == 9.0
    assert rate_limit_wait_seconds({}, attempt=3) == 8.0


def test_backoff_is_exponential() -> None:
    assert [backoff_seconds(attempt=a, base_delay_ms=1000) for a in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_backoff_rejects_invalid_attempt() -> None:
    with pytest.raises(ValueError):
        backoff_seconds(attempt=0, base_delay_ms=1000)
