from __future__ import annotations

import pytest

from tenantplane.core.errors import ProviderConfigError
from tenantplane.core.config import get_settings
from tenantplane.domain.provisioning import ProvisioningJob
from tenantplane.services.provisioning.job_store import InMemoryJobStore, RedisJobStore, get_job_store
from tenantplane.tests.utils.redis import FakeRedis


def _job(job_id: str, account_id: str = "acc-1", status: str = "pending") -> ProvisioningJob:
    return ProvisioningJob(id=job_id, account_id=account_id, account_name="Acme", cloud_type="public", status=status)


@pytest.mark.asyncio
async def test_memory_claim_is_exclusive_while_active() -> None:
    store = InMemoryJobStore()
    assert await store.claim(_job("j1")) is True
    assert await store.claim(_job("j2")) is False

    await store.save(_job("j1", status="completed"))
    assert await store.claim(_job("j3")) is True


@pytest.mark.asyncio
async def test_memory_get_returns_snapshot() -> None:
    store = InMemoryJobStore()
    await store.claim(_job("j1"))
    snapshot = await store.get("acc-1")
    assert snapshot is not None
    snapshot.progress = 80

    stored = await store.get("acc-1")
    assert stored is not None and stored.progress == 0


@pytest.mark.asyncio
async def test_memory_save_ignores_superseded_job() -> None:
    store = InMemoryJobStore()
    await store.claim(_job("j1"))
    await store.save(_job("j1", status="failed"))
    await store.claim(_job("j2"))

    # A late write from the first attempt must not clobber the new job.
    await store.save(_job("j1", status="completed"))

    stored = await store.get("acc-1")
    assert stored is not None and stored.id == "j2"


@pytest.mark.asyncio
async def test_memory_late_active_save_cannot_reopen_settled_job() -> None:
    store = InMemoryJobStore()
    await store.claim(_job("j1"))
    await store.save(_job("j1", status="failed"))

    await store.save(_job("j1", status="in_progress"))

    stored = await store.get("acc-1")
    assert stored is not None and stored.status == "failed"
    assert await store.list_active() == []


@pytest.mark.asyncio
async def test_memory_list_active_and_delete() -> None:
    store = InMemoryJobStore()
    await store.claim(_job("j1", "acc-1"))
    await store.claim(_job("j2", "acc-2"))
    await store.save(_job("j2", "acc-2", status="completed"))

    assert [job.account_id for job in await store.list_active()] == ["acc-1"]
    await store.delete("acc-1")
    assert await store.get("acc-1") is None


@pytest.mark.asyncio
async def test_redis_claim_uses_active_marker() -> None:
    redis = FakeRedis()
    store = RedisJobStore(redis, prefix="tp", job_ttl_s=100, claim_ttl_s=50)

    assert await store.claim(_job("j1")) is True
    assert await store.claim(_job("j2")) is False
    assert redis.values["tp:active:acc-1"] == "j1"
    assert redis.expiries["tp:active:acc-1"] == 50
    assert [job.id for job in await store.list_active()] == ["j1"]


@pytest.mark.asyncio
async def test_redis_terminal_save_releases_claim() -> None:
    redis = FakeRedis()
    store = RedisJobStore(redis, prefix="tp", job_ttl_s=100, claim_ttl_s=50)
    await store.claim(_job("j1"))

    in_progress = _job("j1", status="in_progress")
    in_progress.progress = 40
    await store.save(in_progress)
    stored = await store.get("acc-1")
    assert stored is not None and stored.progress == 40

    await store.save(_job("j1", status="completed"))

    assert "tp:active:acc-1" not in redis.values
    assert redis.expiries["tp:job:acc-1"] == 100
    assert await store.list_active() == []
    assert await store.claim(_job("j2")) is True


@pytest.mark.asyncio
async def test_redis_save_skips_foreign_owner() -> None:
    redis = FakeRedis()
    store = RedisJobStore(redis, prefix="tp")
    await store.claim(_job("j1"))

    await store.save(_job("j-stale", status="completed"))

    stored = await store.get("acc-1")
    assert stored is not None and stored.id == "j1"
    assert redis.values["tp:active:acc-1"] == "j1"


@pytest.mark.asyncio
async def test_redis_late_active_save_cannot_reopen_settled_job() -> None:
    redis = FakeRedis()
    store = RedisJobStore(redis, prefix="tp", job_ttl_s=100, claim_ttl_s=50)
    await store.claim(_job("j1"))
    await store.save(_job("j1", status="failed"))

    # The claim marker is gone, which must not read as permission to write.
    await store.save(_job("j1", status="in_progress"))

    stored = await store.get("acc-1")
    assert stored is not None and stored.status == "failed"
    assert redis.expiries["tp:job:acc-1"] == 100
    assert "tp:active:acc-1" not in redis.values
    assert await store.list_active() == []
    assert await store.claim(_job("j2")) is True


@pytest.mark.asyncio
async def test_redis_active_save_requires_live_claim() -> None:
    redis = FakeRedis()
    store = RedisJobStore(redis, prefix="tp")
    await store.claim(_job("j1"))
    # Simulates the claim marker expiring under a stalled worker.
    await redis.delete("tp:active:acc-1")

    progressed = _job("j1", status="in_progress")
    progressed.progress = 60
    await store.save(progressed)

    stored = await store.get("acc-1")
    assert stored is not None and stored.status == "pending" and stored.progress == 0


@pytest.mark.asyncio
async def test_redis_settled_write_after_reclaim_is_dropped() -> None:
    redis = FakeRedis()
    store = RedisJobStore(redis, prefix="tp", claim_ttl_s=50)
    await store.claim(_job("j1"))
    await redis.delete("tp:active:acc-1")
    await store.claim(_job("j2"))

    await store.save(_job("j1", status="completed"))

    stored = await store.get("acc-1")
    assert stored is not None and stored.id == "j2"
    assert redis.values["tp:active:acc-1"] == "j2"
    assert [job.id for job in await store.list_active()] == ["j2"]


@pytest.mark.asyncio
async def test_redis_delete_clears_every_key() -> None:
    redis = FakeRedis()
    store = RedisJobStore(redis, prefix="tp")
    await store.claim(_job("j1"))

    await store.delete("acc-1")

    assert await store.get("acc-1") is None
    assert await redis.smembers("tp:active-accounts") == set()


def test_job_store_factory(monkeypatch) -> None:
    assert isinstance(get_job_store(), InMemoryJobStore)
    monkeypatch.setenv("JOB_STORE", "redis")
    get_settings.cache_clear()
    assert isinstance(get_job_store(), RedisJobStore)
    monkeypatch.setenv("JOB_STORE", "dynamo")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_job_store()
