"""Retry classification and backoff tests."""

import asyncio

import httpx
import pytest
from pydantic import BaseModel, ValidationError

from repflow.errors import FailureKind, FatalError, TransientError
from repflow.utils.retry import RetryPolicy, call_with_retry, compute_backoff


class _Strict(BaseModel):
    count: int


def _validation_error() -> ValidationError:
    try:
        _Strict.model_validate({"count": "many"})
    except ValidationError as exc:
        return exc
    raise AssertionError("expected a validation error")


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://gateway.test/notify")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("bad status", request=request, response=response)


def test_compute_backoff_growth_and_cap():
    assert compute_backoff(1, base=1, ceiling=10, jitter=0) == 1
    assert compute_backoff(2, base=1, ceiling=10, jitter=0) == 2
    assert compute_backoff(3, base=1, ceiling=10, jitter=0) == 4
    assert compute_backoff(10, base=1, ceiling=10, jitter=0) == 10


def test_backoff_jitter_stays_within_a_quarter():
    policy = RetryPolicy(base_seconds=4, max_seconds=100, jitter=0.25)
    for _ in range(50):
        assert 3.0 <= policy.backoff_delay(1) <= 5.0


@pytest.mark.parametrize(
    "error",
    [
        TransientError("upstream hiccup"),
        TimeoutError(),
        asyncio.TimeoutError(),
        ConnectionResetError("reset by peer"),
        httpx.ConnectTimeout("slow"),
        _status_error(429),
        _status_error(503),
        RuntimeError("Rate limit reached for requests"),
        RuntimeError("ECONNRESET while reading"),
        RuntimeError("service unavailable"),
    ],
)
def test_transient_errors_are_retryable(error):
    assert RetryPolicy().is_retryable(error)


@pytest.mark.parametrize(
    "error",
    [
        FatalError("AI quota exceeded"),
        _validation_error(),
        ValueError("bad input"),
        KeyError("member_id"),
        _status_error(400),
        _status_error(404),
        RuntimeError("something odd"),
    ],
)
def test_fatal_errors_are_not_retryable(error):
    assert not RetryPolicy().is_retryable(error)


def test_status_attribute_is_consulted():
    class ProviderError(Exception):
        def __init__(self, status_code):
            super().__init__("provider failed")
            self.status_code = status_code

    policy = RetryPolicy()
    assert policy.is_retryable(ProviderError(502))
    assert not policy.is_retryable(ProviderError(401))


def test_should_retry_respects_budget():
    policy = RetryPolicy()
    error = TransientError("busy")
    assert policy.should_retry(error, attempt=3, max_retries=3)
    assert not policy.should_retry(error, attempt=4, max_retries=3)
    assert not policy.should_retry(error, attempt=1, max_retries=0)


def test_evaluate_distinguishes_fatal_from_exhausted():
    policy = RetryPolicy(jitter=0)
    retry = policy.evaluate(TransientError("busy"), attempt=2, max_retries=3)
    assert retry.retry and retry.delay == 2

    exhausted = policy.evaluate(TransientError("busy"), attempt=4, max_retries=3)
    assert not exhausted.retry
    assert exhausted.failure_kind is FailureKind.EXHAUSTED

    fatal = policy.evaluate(FatalError("nope"), attempt=1, max_retries=3)
    assert not fatal.retry
    assert fatal.failure_kind is FailureKind.FATAL


@pytest.mark.asyncio
async def test_call_with_retry_recovers_from_transient_failures():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientError("429 Too Many Requests")
        return "ok"

    policy = RetryPolicy(base_seconds=0.001, max_seconds=0.002, jitter=0)
    assert await call_with_retry(flaky, policy, max_retries=3) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_call_with_retry_raises_fatal_immediately():
    calls = []

    async def broken():
        calls.append(1)
        raise FatalError("invalid plan")

    with pytest.raises(FatalError):
        await call_with_retry(broken, RetryPolicy(base_seconds=0.001), max_retries=3)
    assert len(calls) == 1
