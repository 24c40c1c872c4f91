from __future__ import annotations

import pytest
from botocore.exceptions import ClientError

from tenantplane.core.config import get_settings
from tenantplane.core.errors import IntegrationUnavailableError
from tenantplane.providers.aws import call_aws, is_retryable_aws_error
from tenantplane.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    retry_async,
)
from tenantplane.services.telemetry import external_latency_by_integration, gauges_snapshot
from tenantplane.tests.utils.redis import FakeRedis


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}

    breaker = CircuitBreaker(
        "test.integration",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        time_source=lambda: now["t"],
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    assert gauges_snapshot()["circuit_breaker_state.test.integration"] == 1.0

    now["t"] = 11.0
    await breaker.before_call()
    await breaker.record_success()
    await breaker.before_call()
    assert gauges_snapshot()["circuit_breaker_state.test.integration"] == 0.0


@pytest.mark.asyncio
async def test_circuit_breaker_shares_state_through_redis() -> None:
    redis = FakeRedis()
    config = CircuitBreakerConfig(failure_threshold=1, open_seconds=30, half_open_trials=1)
    first = CircuitBreaker("shared.integration", redis=redis, config=config, time_source=lambda: 5.0)
    second = CircuitBreaker("shared.integration", redis=redis, config=config, time_source=lambda: 6.0)

    await first.record_failure()

    with pytest.raises(IntegrationUnavailableError):
        await second.before_call()


def test_retryable_aws_error_classification() -> None:
    assert is_retryable_aws_error(_client_error("ThrottlingException")) is True
    assert is_retryable_aws_error(_client_error("InternalFailure", status=500)) is True
    assert is_retryable_aws_error(_client_error("ValidationException")) is False
    assert is_retryable_aws_error(TimeoutError()) is True


@pytest.mark.asyncio
async def test_call_aws_records_latency_and_propagates_errors() -> None:
    def succeed(**request):
        return {"echo": request}

    def fail(**request):
        raise _client_error("AccessDeniedException", status=403)

    response = await call_aws("test.aws", succeed, Name="x")
    assert response == {"echo": {"Name": "x"}}
    with pytest.raises(ClientError):
        await call_aws("test.aws", fail, Name="x")

    stats = external_latency_by_integration(60)["test.aws"]
    assert stats["error_rate"] == 0.5


@pytest.mark.asyncio
async def test_call_aws_expected_errors_do_not_trip_breaker(monkeypatch) -> None:
    monkeypatch.setenv("CB_FAILURE_THRESHOLD", "1")
    get_settings.cache_clear()

    def missing(**request):
        raise _client_error("ParameterNotFound")

    for _ in range(3):
        with pytest.raises(ClientError):
            await call_aws("test.expected", missing, expected_errors=frozenset({"ParameterNotFound"}))
    # Still closed: the next call reaches the SDK instead of short-circuiting.
    with pytest.raises(ClientError):
        await call_aws("test.expected", missing)
    with pytest.raises(IntegrationUnavailableError):
        await call_aws("test.expected", missing)
