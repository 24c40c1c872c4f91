from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Protocol

from redis.asyncio import Redis

from tenantplane.core.config import get_settings
from tenantplane.core.errors import IntegrationUnavailableError
from tenantplane.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


class _RedisHandle:
    """One client per event loop; breaker state and Redis job claims share it."""

    def __init__(self) -> None:
        self._client: Redis | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def get(self, url: str) -> Redis | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        if self._client is not None and self._loop is loop:
            return self._client
        try:
            self._client = Redis.from_url(url, encoding="utf-8", decode_responses=True)
        except Exception as exc:  # noqa: BLE001 - a bad URL disables shared state, not the service
            logger.warning("resilience_redis_unavailable error=%s", exc)
            self._client = None
            return None
        self._loop = loop
        return self._client


_redis_handle = _RedisHandle()


async def get_resilience_redis() -> Redis | None:
    return _redis_handle.get(get_settings().redis_url)


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        settings = get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff with +/-50% jitter so throttled callers spread out.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    name: str | None = None,
) -> Any:
    policy = policy or RetryPolicy.from_settings()
    retryable = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless another attempt is allowed
            if attempt == attempts or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            logger.info("external_call_retry integration=%s attempt=%d error=%s", name or "-", attempt, exc)
            await asyncio.sleep(policy.delay_s(attempt))
    raise AssertionError("unreachable")


CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

_STATE_GAUGE = {CLOSED: 0.0, HALF_OPEN: 0.5, OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass(frozen=True)
class CircuitBreakerState:
    state: str = CLOSED
    failures: int = 0
    opened_at: float | None = None
    half_open_trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else str(self.opened_at),
            "half_open_trials": str(self.half_open_trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> CircuitBreakerState:
        return cls(
            state=raw.get("state") or CLOSED,
            failures=int(raw.get("failures") or 0),
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") else None,
            half_open_trials=int(raw.get("half_open_trials") or 0),
        )


class _BreakerStore(Protocol):
    async def load(self) -> CircuitBreakerState:
        ...

    async def save(self, state: CircuitBreakerState) -> None:
        ...


class _LocalBreakerStore:
    def __init__(self) -> None:
        self._state = CircuitBreakerState()

    async def load(self) -> CircuitBreakerState:
        return self._state

    async def save(self, state: CircuitBreakerState) -> None:
        self._state = state


class _RedisBreakerStore:
    """Hash per integration so every API instance trips and recovers together."""

    def __init__(self, redis: Redis, key: str, ttl_s: int) -> None:
        self._redis = redis
        self._key = key
        self._ttl_s = ttl_s

    async def load(self) -> CircuitBreakerState:
        raw = await self._redis.hgetall(self._key)
        return CircuitBreakerState.from_mapping(raw) if raw else CircuitBreakerState()

    async def save(self, state: CircuitBreakerState) -> None:
        await self._redis.hset(self._key, mapping=state.to_mapping())
        await self._redis.expire(self._key, self._ttl_s)


class CircuitBreaker:
    """Per-integration breaker in front of AWS calls.

    ``before_call`` raises ``IntegrationUnavailableError`` while open. After
    ``open_seconds`` a limited number of half-open trials go through; one
    success closes the breaker and one failure reopens it.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig.from_settings()
        self._time = time_source or time.monotonic
        self._store: _BreakerStore
        if redis is None:
            self._store = _LocalBreakerStore()
        else:
            key = f"{get_settings().cb_redis_prefix}:{name}"
            self._store = _RedisBreakerStore(redis, key, max(self._config.open_seconds * 4, 60))

    @property
    def name(self) -> str:
        return self._name

    def _enter(self, current: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if current.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, current.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        return CircuitBreakerState(state=target, opened_at=self._time() if target == OPEN else None)

    def _unavailable(self) -> IntegrationUnavailableError:
        increment_counter(f"circuit_breaker_rejections_total.{self._name}")
        return IntegrationUnavailableError(f"{self._name} is temporarily unavailable")

    async def before_call(self) -> CircuitBreakerState:
        state = await self._store.load()
        if state.state == OPEN:
            cooled = state.opened_at is not None and self._time() - state.opened_at >= self._config.open_seconds
            if not cooled:
                raise self._unavailable()
            state = self._enter(state, HALF_OPEN)
        if state.state == HALF_OPEN:
            if state.half_open_trials >= self._config.half_open_trials:
                await self._store.save(state)
                raise self._unavailable()
            state = replace(state, half_open_trials=state.half_open_trials + 1)
            await self._store.save(state)
        return state

    async def record_success(self) -> None:
        state = await self._store.load()
        if state.state == CLOSED and state.failures == 0:
            return
        await self._store.save(self._enter(state, CLOSED))

    async def record_failure(self) -> None:
        state = await self._store.load()
        failures = state.failures + 1
        if state.state == HALF_OPEN or failures >= self._config.failure_threshold:
            await self._store.save(self._enter(state, OPEN))
            return
        await self._store.save(replace(state, failures=failures))


_breakers: dict[str, CircuitBreaker] = {}


async def get_circuit_breaker(name: str) -> CircuitBreaker:
    # All adapters for one integration share a breaker within the process.
    breaker = _breakers.get(name)
    if breaker is None:
        redis = await get_resilience_redis() if get_settings().cb_shared_state else None
        breaker = _breakers[name] = CircuitBreaker(name, redis=redis)
    return breaker


def reset_circuit_breakers() -> None:
    _breakers.clear()
