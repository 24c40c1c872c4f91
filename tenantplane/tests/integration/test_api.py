from __future__ import annotations

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from tenantplane.apps.api.main import create_app
from tenantplane.core.config import get_settings
from tenantplane.providers.stacks.fake import FakeStackOrchestrator
from tenantplane.services import container as container_module
from tenantplane.services.container import get_container, reset_container


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _hanging_stacks(monkeypatch) -> FakeStackOrchestrator:
    # Keep private provisioning in flight so the job can be observed mid-run.
    monkeypatch.setenv("STACK_MAX_WAIT_S", "0.5")
    get_settings.cache_clear()
    reset_container()
    stacks = FakeStackOrchestrator(poll_interval_s=0.01)
    stacks.hang_on_create = True
    monkeypatch.setattr(container_module, "get_stack_orchestrator", lambda: stacks)
    return stacks


@pytest.mark.asyncio
async def test_health_uses_success_envelope() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["data"] == {"status": "ok", "environment": "test"}
    assert payload["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_public_provisioning_completes_in_background() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/provisioning",
            json={"accountId": "acct-1", "accountName": "Acme", "cloudType": "public"},
        )
        assert response.status_code == 202
        job = response.json()["data"]
        assert job["account_id"] == "acct-1"
        assert job["status"] == "pending"
        assert [resource["type"] for resource in job["resources"]] == ["parameters"]

        await get_container().tracker.drain()

        status_response = await client.get("/v1/provisioning/acct-1/status")
        routing_response = await client.get("/v1/provisioning/acct-1/routing")

    assert status_response.status_code == 200
    view = status_response.json()["data"]
    assert view["status"] == "completed"
    assert view["progress"] == 100
    assert view["store_name"] == get_settings().resolved_shared_table_name()
    routing = routing_response.json()["data"]
    assert routing["is_private"] is False
    assert routing["cloud_type"] == "public"


@pytest.mark.asyncio
async def test_hybrid_request_provisions_dedicated_store() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/provisioning",
            json={"account_id": "acct-2", "account_name": "Globex", "cloud_type": "hybrid"},
        )
        assert response.status_code == 202
        assert response.json()["data"]["cloud_type"] == "private"

        await get_container().tracker.drain()
        routing_response = await client.get("/v1/provisioning/acct-2/routing")

    assert routing_response.status_code == 200
    routing = routing_response.json()["data"]
    assert routing["is_private"] is True
    assert routing["store_name"] == "app-test-acct-2"


@pytest.mark.asyncio
async def test_in_flight_job_is_listed_and_blocks_duplicates(monkeypatch) -> None:
    _hanging_stacks(monkeypatch)
    body = {"accountId": "acct-3", "accountName": "Initech", "cloudType": "private"}
    async with _client() as client:
        first = await client.post("/v1/provisioning", json=body)
        assert first.status_code == 202
        await _wait_for_stack_submission("acct-3")

        duplicate = await client.post("/v1/provisioning", json=body)
        active = await client.get("/v1/provisioning/active")
        in_flight = await client.get("/v1/provisioning/acct-3/status")
        blocked_delete = await client.delete("/v1/provisioning/acct-3")

        await get_container().tracker.drain()
        settled = await client.get("/v1/provisioning/acct-3/status")

    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "CONFLICT"
    assert [job["account_id"] for job in active.json()["data"]] == ["acct-3"]
    view = in_flight.json()["data"]
    assert view["status"] == "in_progress"
    assert view["progress"] == 10
    assert view["stack_id"].startswith("arn:aws:cloudformation:")
    assert blocked_delete.status_code == 409
    assert settled.json()["data"]["status"] == "failed"


async def _wait_for_stack_submission(account_id: str) -> None:
    tracker = get_container().tracker
    for _ in range(100):
        if (await tracker.get_provisioning_status(account_id)).stack_id:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"stack was never submitted for {account_id}")


@pytest.mark.asyncio
async def test_unknown_account_status_is_not_found() -> None:
    async with _client() as client:
        response = await client.get("/v1/provisioning/missing/status")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_unprovisioned_account_is_not_routable() -> None:
    async with _client() as client:
        response = await client.get("/v1/provisioning/missing/routing")
    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "ACCOUNT_NOT_ROUTABLE"
    assert error["details"]["account_id"] == "missing"
    assert error["details"]["retryable"] is True


@pytest.mark.asyncio
async def test_malformed_bodies_are_rejected() -> None:
    async with _client() as client:
        unknown_cloud = await client.post(
            "/v1/provisioning",
            json={"accountId": "acct-4", "accountName": "Hooli", "cloudType": "edge"},
        )
        blank_id = await client.post(
            "/v1/provisioning",
            json={"accountId": "   ", "accountName": "Hooli", "cloudType": "public"},
        )
    assert unknown_cloud.status_code == 422
    assert unknown_cloud.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert blank_id.status_code == 422
    assert blank_id.json()["error"]["code"] == "VALIDATION_ERROR"
    assert await get_container().tracker.get_active_jobs() == []


@pytest.mark.asyncio
async def test_deprovision_removes_routing_facts() -> None:
    async with _client() as client:
        await client.post(
            "/v1/provisioning",
            json={"accountId": "acct-5", "accountName": "Umbrella", "cloudType": "private"},
        )
        await get_container().tracker.drain()

        response = await client.delete("/v1/provisioning/acct-5")
        after = await client.get("/v1/provisioning/acct-5/status")
        routing = await client.get("/v1/provisioning/acct-5/routing")

    assert response.status_code == 200
    assert response.json()["data"]["message"] == "Account acct-5 deprovisioned successfully"
    assert after.status_code == 404
    assert routing.status_code == 409


@pytest.mark.asyncio
async def test_bootstrap_endpoint_runs_once() -> None:
    async with _client() as client:
        before = await client.get("/v1/bootstrap/status")
        first = await client.post("/v1/bootstrap")
        second = await client.post("/v1/bootstrap")
        after = await client.get("/v1/bootstrap/status")

    assert before.json()["data"] == {"bootstrapped": False}
    assert first.status_code == 200
    result = first.json()["data"]
    assert result["success"] is True
    assert result["message"] == "Platform bootstrapped successfully"
    assert len(result["completed_steps"]) == 12
    assert second.json()["data"]["message"] == "Platform already bootstrapped"
    assert after.json()["data"] == {"bootstrapped": True}


@pytest.mark.asyncio
async def test_bootstrap_failure_uses_error_envelope(monkeypatch) -> None:
    sequencer = get_container().bootstrap

    async def broken_license(now: str) -> None:
        raise RuntimeError("table unavailable")

    monkeypatch.setattr(sequencer, "_create_license", broken_license)
    async with _client() as client:
        response = await client.post("/v1/bootstrap")

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "BOOTSTRAP_FAILED"
    assert error["details"]["failed_step"] == "license"
    assert error["details"]["completed_steps"][-1] == "provisioning_registration"


@pytest.mark.asyncio
async def test_telemetry_reports_routing_counters() -> None:
    async with _client() as client:
        await client.post(
            "/v1/provisioning",
            json={"accountId": "acct-6", "accountName": "Stark", "cloudType": "public"},
        )
        await get_container().tracker.drain()
        await client.get("/v1/provisioning/acct-6/routing")
        await client.get("/v1/provisioning/acct-6/routing")
        response = await client.get("/v1/health/telemetry", params={"window_s": 60})

    assert response.status_code == 200
    counters = response.json()["data"]["counters"]
    assert counters["routing_cache_misses_total"] == 1
    assert counters["routing_cache_hits_total"] == 1
    assert counters["http_requests_total_2xx"] >= 3
