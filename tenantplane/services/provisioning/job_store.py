from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from tenantplane.core.config import get_settings
from tenantplane.core.errors import IntegrationUnavailableError, ProviderConfigError
from tenantplane.domain.provisioning import ProvisioningJob
from tenantplane.services.resilience import get_resilience_redis


logger = logging.getLogger(__name__)


# KEYS: active marker, job record, active-accounts index.
# ARGV: job id, job JSON, "1" when the job is still active, terminal TTL, account id.
# Returns 1 when written, 0 when the write belongs to a superseded or settled job.
JOB_SAVE_SCRIPT = r"""
local current = redis.call("GET", KEYS[2])
if not current or cjson.decode(current)["id"] ~= ARGV[1] then
  return 0
end
if ARGV[3] == "1" then
  if redis.call("GET", KEYS[1]) ~= ARGV[1] then
    return 0
  end
  redis.call("SET", KEYS[2], ARGV[2])
  return 1
end
redis.call("SET", KEYS[2], ARGV[2], "EX", tonumber(ARGV[4]))
if redis.call("GET", KEYS[1]) == ARGV[1] then
  redis.call("DEL", KEYS[1])
end
redis.call("SREM", KEYS[3], ARGV[5])
return 1
"""


class JobStore(Protocol):
    async def claim(self, job: ProvisioningJob) -> bool:
        ...

    async def get(self, account_id: str) -> ProvisioningJob | None:
        ...

    async def save(self, job: ProvisioningJob) -> None:
        ...

    async def delete(self, account_id: str) -> None:
        ...

    async def list_active(self) -> list[ProvisioningJob]:
        ...


class InMemoryJobStore:
    """Process-local job table; one store-wide lock makes claim a compare-and-swap.

    No critical section awaits, so a single lock costs nothing and keeps no
    per-account state beyond the jobs themselves.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, ProvisioningJob] = {}
        self._lock = asyncio.Lock()

    async def claim(self, job: ProvisioningJob) -> bool:
        async with self._lock:
            current = self._jobs.get(job.account_id)
            if current is not None and current.is_active:
                return False
            self._jobs[job.account_id] = job.model_copy(deep=True)
            return True

    async def get(self, account_id: str) -> ProvisioningJob | None:
        job = self._jobs.get(account_id)
        # Hand out snapshots so pollers never observe a half-applied update.
        return job.model_copy(deep=True) if job is not None else None

    async def save(self, job: ProvisioningJob) -> None:
        async with self._lock:
            current = self._jobs.get(job.account_id)
            # Only the claiming job may write, and a settled job never becomes active again.
            if current is None or current.id != job.id or (job.is_active and not current.is_active):
                logger.warning("job_save_superseded account_id=%s job_id=%s", job.account_id, job.id)
                return
            self._jobs[job.account_id] = job.model_copy(deep=True)

    async def delete(self, account_id: str) -> None:
        async with self._lock:
            self._jobs.pop(account_id, None)

    async def list_active(self) -> list[ProvisioningJob]:
        return [job.model_copy(deep=True) for job in self._jobs.values() if job.is_active]


class RedisJobStore:
    """Job table shared across API instances; ``SET NX EX`` on the active marker is the claim."""

    def __init__(
        self,
        redis: Any | None = None,
        *,
        prefix: str | None = None,
        job_ttl_s: int | None = None,
        claim_ttl_s: int | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._prefix = prefix or settings.job_redis_prefix
        self._job_ttl_s = job_ttl_s or settings.job_ttl_s
        self._claim_ttl_s = claim_ttl_s or settings.job_claim_ttl_s

    async def _get_redis(self) -> Any:
        if self._redis is None:
            self._redis = await get_resilience_redis()
        if self._redis is None:
            raise IntegrationUnavailableError("Redis is unavailable for provisioning jobs")
        return self._redis

    def _job_key(self, account_id: str) -> str:
        return f"{self._prefix}:job:{account_id}"

    def _active_key(self, account_id: str) -> str:
        return f"{self._prefix}:active:{account_id}"

    def _index_key(self) -> str:
        return f"{self._prefix}:active-accounts"

    async def claim(self, job: ProvisioningJob) -> bool:
        redis = await self._get_redis()
        # The marker expires so a crashed worker cannot block an account forever.
        claimed = await redis.set(self._active_key(job.account_id), job.id, nx=True, ex=self._claim_ttl_s)
        if not claimed:
            return False
        await redis.set(self._job_key(job.account_id), job.model_dump_json())
        await redis.sadd(self._index_key(), job.account_id)
        return True

    async def get(self, account_id: str) -> ProvisioningJob | None:
        redis = await self._get_redis()
        raw = await redis.get(self._job_key(account_id))
        if raw is None:
            return None
        return ProvisioningJob.model_validate_json(raw)

    async def save(self, job: ProvisioningJob) -> None:
        redis = await self._get_redis()
        # Check and write in one script so a late writer cannot slip in between.
        written = await redis.eval(
            JOB_SAVE_SCRIPT,
            3,
            self._active_key(job.account_id),
            self._job_key(job.account_id),
            self._index_key(),
            job.id,
            job.model_dump_json(),
            "1" if job.is_active else "0",
            self._job_ttl_s,
            job.account_id,
        )
        if int(written) != 1:
            logger.warning("job_save_superseded account_id=%s job_id=%s", job.account_id, job.id)

    async def delete(self, account_id: str) -> None:
        redis = await self._get_redis()
        await redis.delete(self._job_key(account_id))
        await redis.delete(self._active_key(account_id))
        await redis.srem(self._index_key(), account_id)

    async def list_active(self) -> list[ProvisioningJob]:
        redis = await self._get_redis()
        jobs: list[ProvisioningJob] = []
        for account_id in sorted(await redis.smembers(self._index_key())):
            job = await self.get(account_id)
            if job is None or not job.is_active:
                await redis.srem(self._index_key(), account_id)
                continue
            jobs.append(job)
        return jobs


def get_job_store() -> JobStore:
    settings = get_settings()
    backend = (settings.job_store or "memory").lower()
    if backend == "memory":
        return InMemoryJobStore()
    if backend == "redis":
        return RedisJobStore()
    raise ProviderConfigError(f"Unsupported job store: {backend}")
