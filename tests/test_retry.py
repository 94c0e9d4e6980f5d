"""Tests for aide.harness.retry."""

from __future__ import annotations

import pytest

from aide.errors import TransientServiceFailure
from aide.harness.retry import RetryConfig, compute_delay, is_retryable_error, with_retries

FAST = RetryConfig(max_retries=2, base_delay=0.05, max_delay=0.05, jitter_range=0.0)


@pytest.mark.parametrize(
    "error, expected",
    [
        (ConnectionResetError(), True),
        (TimeoutError(), True),
        (ValueError("bad input"), False),
        (KeyError("x"), False),
    ],
)
def test_is_retryable_error(error, expected) -> None:
    assert is_retryable_error(error) is expected


def test_compute_delay_grows_and_caps() -> None:
    config = RetryConfig(base_delay=1.0, max_delay=4.0, exponential_base=2.0, jitter_range=0.0)
    assert [compute_delay(n, config) for n in range(4)] == [1.0, 2.0, 4.0, 4.0]


def test_compute_delay_prefers_retry_after() -> None:
    assert compute_delay(0, RetryConfig(), retry_after=7.0) == 7.0
    assert compute_delay(0, RetryConfig(), retry_after=0.2) == 1.0


@pytest.mark.asyncio
async def test_transient_failures_are_retried() -> None:
    attempts = []
    retries = []

    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionResetError("reset")
        return "ok"

    result = await with_retries(
        flaky,
        config=FAST,
        on_retry=lambda attempt, error, delay: retries.append(attempt),
    )

    assert result == "ok"
    assert len(attempts) == 3
    assert retries == [1, 2]


@pytest.mark.asyncio
async def test_non_retryable_errors_are_raised_at_once() -> None:
    attempts = []

    async def broken() -> None:
        attempts.append(1)
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        await with_retries(broken, config=FAST)
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_become_transient_failures() -> None:
    async def down() -> None:
        raise ConnectionRefusedError("refused")

    with pytest.raises(TransientServiceFailure) as info:
        await with_retries(down, config=FAST, operation="embedding")

    assert "embedding failed after 3 attempts" in str(info.value)
    assert isinstance(info.value.__cause__, ConnectionRefusedError)
