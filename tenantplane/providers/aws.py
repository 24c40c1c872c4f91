from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from tenantplane.core.config import get_settings
from tenantplane.services.resilience import get_circuit_breaker, retry_async
from tenantplane.services.telemetry import record_external_call


_AUTH_ERROR_NAMES = {"NoCredentialsError", "PartialCredentialsError"}
_THROTTLE_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "ProvisionedThroughputExceededException",
    "TooManyRequestsException",
}


def create_client(service: str, *, region: str | None = None, **credentials: Any) -> Any:
    return boto3.client(service, region_name=region or get_settings().aws_region, **credentials)


def client_error_code(exc: Exception) -> str | None:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def client_error_message(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Message") or str(exc)
    return str(exc)


def is_auth_error(exc: Exception) -> bool:
    if exc.__class__.__name__ in _AUTH_ERROR_NAMES:
        return True
    if isinstance(exc, ClientError):
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return status in {401, 403}
    return False


def is_retryable_aws_error(exc: Exception) -> bool:
    # Retry timeouts, connection drops, throttling and 5xx responses.
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, ClientError):
        if client_error_code(exc) in _THROTTLE_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return isinstance(status, int) and status >= 500
    if isinstance(exc, BotoCoreError):
        return exc.__class__.__name__ in {"EndpointConnectionError", "ConnectTimeoutError", "ReadTimeoutError"}
    return False


async def call_aws(
    integration: str,
    method: Callable[..., Any],
    /,
    *,
    retryable: Callable[[Exception], bool] | None = None,
    expected_errors: frozenset[str] = frozenset(),
    **request: Any,
) -> Any:
    """Run one blocking boto3 call off the event loop with retries and a breaker.

    The raw SDK exception propagates so each adapter can map it to its own
    error type; latency samples are recorded for both outcomes. Error codes in
    ``expected_errors`` (for example a missing parameter) are answers, not
    outages, and do not count against the breaker.
    """
    breaker = await get_circuit_breaker(integration)
    await breaker.before_call()
    start = time.monotonic()
    try:
        async def _call() -> Any:
            return await asyncio.to_thread(method, **request)

        response = await retry_async(_call, retryable=retryable or is_retryable_aws_error, name=integration)
    except Exception as exc:
        expected = client_error_code(exc) in expected_errors
        if expected:
            await breaker.record_success()
        else:
            await breaker.record_failure()
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=expected,
        )
        raise
    await breaker.record_success()
    record_external_call(
        integration=integration,
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=True,
    )
    return response


def create_resource(service: str, *, region: str | None = None, **credentials: Any) -> Any:
    return boto3.resource(service, region_name=region or get_settings().aws_region, **credentials)
