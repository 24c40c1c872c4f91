from __future__ import annotations

import asyncio

import pytest

from tenantplane.core.errors import ConflictError, NotFoundError
from tenantplane.domain.provisioning import ProvisioningConfig
from tenantplane.providers.metrics.base import DEPROVISIONING_METRIC, PROVISIONING_METRIC
from tenantplane.providers.stacks.base import StackResource
from tenantplane.services.provisioning.jobs import (
    compute_progress,
    map_resource_status,
    map_resource_type,
    progress_message,
)
from tenantplane.tests.utils.harness import Harness, build_harness


def _request(account_id: str, cloud_type: str) -> dict:
    return {"account_id": account_id, "account_name": f"Account {account_id}", "cloud_type": cloud_type}


async def _wait_for_stack_id(harness: Harness, account_id: str) -> str:
    for _ in range(200):
        job = await harness.jobs.get(account_id)
        if job is not None and job.stack_id:
            return job.stack_id
        await asyncio.sleep(0.01)
    raise AssertionError(f"stack was never submitted for {account_id}")


@pytest.mark.asyncio
async def test_public_job_completes_in_background() -> None:
    harness = build_harness()
    job = await harness.tracker.start_provisioning(_request("acc-1", "public"))
    assert job.status == "pending"
    assert [resource.type for resource in job.resources] == ["parameters"]

    await harness.tracker.drain()

    view = await harness.tracker.get_provisioning_status("acc-1")
    assert view.status == "completed"
    assert view.progress == 100
    assert view.completed_at is not None
    assert all(resource.status == "active" for resource in view.resources)
    records = harness.metrics.of_event(PROVISIONING_METRIC)
    assert len(records) == 1
    assert records[0].success is True
    assert records[0].resource_count == 1


@pytest.mark.asyncio
async def test_second_start_conflicts_while_job_is_active() -> None:
    harness = build_harness(stack_max_wait_s=30)
    harness.stacks.hang_on_create = True
    await harness.tracker.start_provisioning(_request("acc-2", "private"))

    with pytest.raises(ConflictError):
        await harness.tracker.start_provisioning(_request("acc-2", "private"))

    active = await harness.tracker.get_active_jobs()
    assert [job.account_id for job in active] == ["acc-2"]

    await _wait_for_stack_id(harness, "acc-2")
    harness.stacks.complete_stack("app-test-account-acc-2")
    await harness.tracker.drain()
    assert await harness.tracker.get_active_jobs() == []


@pytest.mark.asyncio
async def test_new_job_allowed_after_terminal_job() -> None:
    harness = build_harness()
    first = await harness.tracker.start_provisioning(_request("acc-3", "public"))
    await harness.tracker.drain()

    second = await harness.tracker.start_provisioning(_request("acc-3", "public"))
    await harness.tracker.drain()

    assert second.id != first.id
    stored = await harness.jobs.get("acc-3")
    assert stored is not None and stored.id == second.id


@pytest.mark.asyncio
async def test_polling_reports_stack_resource_progress() -> None:
    harness = build_harness(stack_max_wait_s=30)
    harness.stacks.hang_on_create = True
    await harness.tracker.start_provisioning(_request("acc-4", "private"))
    stack_id = await _wait_for_stack_id(harness, "acc-4")

    stack = harness.stacks.stacks["app-test-account-acc-4"]
    stack.resources = [
        StackResource("AccountTable", "AWS::DynamoDB::Table", "CREATE_IN_PROGRESS"),
        StackResource("DataPlaneAccessRole", "AWS::IAM::Role", "CREATE_COMPLETE", "role"),
        StackResource("TableNameParam", "AWS::SSM::Parameter", "CREATE_COMPLETE", "param"),
        StackResource("AlarmTopic", "AWS::SNS::Topic", "CREATE_IN_PROGRESS"),
    ]

    view = await harness.tracker.get_provisioning_status("acc-4")

    assert view.status == "in_progress"
    assert view.progress == 52
    assert view.stack_id == stack_id
    assert view.message == "Creating DynamoDB Table..."
    assert [(resource.type, resource.status) for resource in view.resources] == [
        ("datastore", "creating"),
        ("iam", "active"),
        ("parameters", "active"),
        ("stack", "creating"),
    ]

    harness.stacks.complete_stack("app-test-account-acc-4")
    await harness.tracker.drain()
    view = await harness.tracker.get_provisioning_status("acc-4")
    assert view.status == "completed"
    assert view.progress == 100
    assert view.store_name == "app-test-acc-4"


@pytest.mark.asyncio
async def test_failed_job_records_error_and_metrics() -> None:
    harness = build_harness()
    harness.stacks.fail_on_create = "Resource limit exceeded"
    await harness.tracker.start_provisioning(_request("acc-5", "private"))
    await harness.tracker.drain()

    view = await harness.tracker.get_provisioning_status("acc-5")
    assert view.status == "failed"
    assert "Resource limit exceeded" in (view.error or "")
    assert all(resource.status == "failed" for resource in view.resources)
    records = harness.metrics.of_event(PROVISIONING_METRIC)
    assert len(records) == 1
    assert records[0].success is False
    assert records[0].error_code == "StackOperationError"


@pytest.mark.asyncio
async def test_status_falls_back_to_durable_record() -> None:
    harness = build_harness()
    await harness.provisioner.provision_account(
        ProvisioningConfig(account_id="acc-6", account_name="Durable", cloud_type="public")
    )

    view = await harness.tracker.get_provisioning_status("acc-6")

    assert view.status == "completed"
    assert view.progress == 100
    assert view.account_name == "acc-6"
    assert view.cloud_type == "public"
    assert view.resources == []


@pytest.mark.asyncio
async def test_status_unknown_account_is_not_found() -> None:
    harness = build_harness()
    with pytest.raises(NotFoundError):
        await harness.tracker.get_provisioning_status("nobody")


@pytest.mark.asyncio
async def test_deprovision_rejected_while_provisioning() -> None:
    harness = build_harness(stack_max_wait_s=30)
    harness.stacks.hang_on_create = True
    await harness.tracker.start_provisioning(_request("acc-7", "private"))
    await _wait_for_stack_id(harness, "acc-7")

    with pytest.raises(ConflictError):
        await harness.tracker.deprovision("acc-7")

    harness.stacks.complete_stack("app-test-account-acc-7")
    await harness.tracker.drain()


@pytest.mark.asyncio
async def test_completed_stack_does_not_settle_job_before_task_finishes() -> None:
    # A slow poll leaves the task waiting after the stack has already completed.
    harness = build_harness(stack_max_wait_s=30, stack_poll_interval_s=0.2)
    harness.stacks.hang_on_create = True
    first = await harness.tracker.start_provisioning(_request("acc-9", "private"))
    await _wait_for_stack_id(harness, "acc-9")
    harness.stacks.complete_stack("app-test-account-acc-9")

    view = await harness.tracker.get_provisioning_status("acc-9")

    assert view.status == "in_progress"
    assert view.progress == 95
    assert view.completed_at is None
    assert all(resource.status == "active" for resource in view.resources)
    with pytest.raises(ConflictError):
        await harness.tracker.start_provisioning(_request("acc-9", "private"))

    await harness.tracker.drain()

    stored = await harness.jobs.get("acc-9")
    assert stored is not None and stored.id == first.id
    assert stored.status == "completed"
    assert stored.progress == 100
    assert harness.stacks.created == ["app-test-account-acc-9"]
    assert harness.parameter("acc-9", "provisioning-status") == "active"


@pytest.mark.asyncio
async def test_deprovision_waits_for_task_after_stack_completes() -> None:
    harness = build_harness(stack_max_wait_s=30, stack_poll_interval_s=0.2)
    harness.stacks.hang_on_create = True
    await harness.tracker.start_provisioning(_request("acc-10", "private"))
    await _wait_for_stack_id(harness, "acc-10")
    harness.stacks.complete_stack("app-test-account-acc-10")
    assert (await harness.tracker.get_provisioning_status("acc-10")).status == "in_progress"

    with pytest.raises(ConflictError):
        await harness.tracker.deprovision("acc-10")

    await harness.tracker.drain()
    assert harness.parameter("acc-10", "provisioning-status") == "active"

    await harness.tracker.deprovision("acc-10")

    # Nothing from the finished task lands after the cleanup.
    assert harness.parameters.names_with_prefix("/accounts/acc-10/") == []
    assert await harness.jobs.get("acc-10") is None


@pytest.mark.asyncio
async def test_rolled_back_stack_keeps_job_in_progress_until_task_fails_it() -> None:
    harness = build_harness(stack_max_wait_s=30, stack_poll_interval_s=0.2)
    harness.stacks.hang_on_create = True
    await harness.tracker.start_provisioning(_request("acc-11", "private"))
    await _wait_for_stack_id(harness, "acc-11")
    stack = harness.stacks.stacks["app-test-account-acc-11"]
    stack.status = "ROLLBACK_COMPLETE"
    stack.status_reason = "Table limit reached"

    view = await harness.tracker.get_provisioning_status("acc-11")

    assert view.status == "in_progress"
    assert view.message == "Table limit reached"
    assert view.error is None

    await harness.tracker.drain()
    view = await harness.tracker.get_provisioning_status("acc-11")
    assert view.status == "failed"
    assert "Table limit reached" in (view.error or "")


@pytest.mark.asyncio
async def test_deprovision_clears_job_and_emits_metrics() -> None:
    harness = build_harness()
    await harness.tracker.start_provisioning(_request("acc-8", "private"))
    await harness.tracker.drain()

    result = await harness.tracker.deprovision("acc-8")

    assert result == {"message": "Account acc-8 deprovisioned successfully"}
    assert await harness.jobs.get("acc-8") is None
    records = harness.metrics.of_event(DEPROVISIONING_METRIC)
    assert len(records) == 1
    assert records[0].success is True
    assert records[0].cloud_type == "private"
    with pytest.raises(NotFoundError):
        await harness.tracker.get_provisioning_status("acc-8")


def test_compute_progress_bounds() -> None:
    assert compute_progress([]) == 10
    done = StackResource("A", "AWS::DynamoDB::Table", "CREATE_COMPLETE")
    assert compute_progress([done, done]) == 95
    rolled_back = StackResource("B", "AWS::IAM::Role", "ROLLBACK_COMPLETE")
    assert compute_progress([done, rolled_back]) == 52


def test_resource_mapping_helpers() -> None:
    assert map_resource_type("AWS::DynamoDB::Table") == "datastore"
    assert map_resource_type("AWS::IAM::Role") == "iam"
    assert map_resource_type("AWS::SSM::Parameter") == "parameters"
    assert map_resource_type("AWS::Lambda::Function") == "stack"
    assert map_resource_status("CREATE_FAILED") == "failed"
    assert map_resource_status("DELETE_IN_PROGRESS") == "deleting"
    assert map_resource_status("UPDATE_IN_PROGRESS") == "creating"
    assert progress_message([]) == "Provisioning in progress..."
