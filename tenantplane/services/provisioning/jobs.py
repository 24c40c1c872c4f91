from __future__ import annotations

import asyncio
import functools
import logging
import time
import uuid
from typing import Any

from tenantplane.core.errors import ConflictError, NotFoundError
from tenantplane.domain.provisioning import (
    CLOUD_PUBLIC,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_IN_PROGRESS,
    JOB_PENDING,
    STATUS_ACTIVE,
    ProvisioningConfig,
    ProvisioningJob,
    ProvisioningResource,
    ProvisioningStatus,
    ProvisioningStatusView,
    job_status_from_durable,
    utc_now,
)
from tenantplane.providers.metrics.base import (
    DEPROVISIONING_METRIC,
    PROVISIONING_METRIC,
    MetricsSink,
    OperationMetrics,
)
from tenantplane.providers.stacks.base import StackOrchestrator, StackResource
from tenantplane.services.provisioning.job_store import JobStore
from tenantplane.services.provisioning.provisioner import AccountProvisioner, parse_provisioning_config
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def initial_resources(cloud_type: str) -> list[ProvisioningResource]:
    if cloud_type == CLOUD_PUBLIC:
        return [ProvisioningResource(type="parameters", name="Account Parameters")]
    return [
        ProvisioningResource(type="stack", name="Infrastructure Stack"),
        ProvisioningResource(type="datastore", name="Data Table"),
        ProvisioningResource(type="iam", name="Access Roles"),
        ProvisioningResource(type="parameters", name="Configuration Parameters"),
    ]


def _is_complete(status: str) -> bool:
    return "COMPLETE" in status and "ROLLBACK" not in status


def compute_progress(resources: list[StackResource]) -> int:
    # Reserve the last 5% for the final parameter writes after the stack settles.
    if not resources:
        return 10
    completed = sum(1 for resource in resources if _is_complete(resource.status))
    return min(95, 10 + (85 * completed) // len(resources))


def progress_message(resources: list[StackResource]) -> str:
    for resource in resources:
        if "IN_PROGRESS" in resource.status:
            label = resource.resource_type.replace("AWS::", "", 1).replace("::", " ", 1)
            return f"Creating {label}..."
    return "Provisioning in progress..."


def map_resource_type(resource_type: str) -> str:
    if "DynamoDB" in resource_type:
        return "datastore"
    if "IAM" in resource_type:
        return "iam"
    if "SSM" in resource_type:
        return "parameters"
    return "stack"


def map_resource_status(status: str) -> str:
    if _is_complete(status):
        return "active"
    if "FAILED" in status or "ROLLBACK" in status:
        return "failed"
    if "DELETE" in status:
        return "deleting"
    if "IN_PROGRESS" in status:
        return "creating"
    return "pending"


def map_stack_resources(resources: list[StackResource]) -> list[ProvisioningResource]:
    return [
        ProvisioningResource(
            type=map_resource_type(resource.resource_type),
            name=resource.logical_id or resource.physical_id or "Unknown",
            status=map_resource_status(resource.status),
            arn=resource.physical_id,
        )
        for resource in resources
    ]


def job_to_view(job: ProvisioningJob) -> ProvisioningStatusView:
    return ProvisioningStatusView(
        account_id=job.account_id,
        account_name=job.account_name,
        cloud_type=job.cloud_type,
        status=job.status,
        message=job.message,
        progress=job.progress,
        started_at=job.started_at,
        completed_at=job.completed_at,
        stack_id=job.stack_id,
        store_name=job.store_name,
        store_arn=job.store_arn,
        resources=[resource.model_copy() for resource in job.resources],
        error=job.error,
    )


def durable_to_view(status: ProvisioningStatus) -> ProvisioningStatusView:
    active = status.status == STATUS_ACTIVE
    return ProvisioningStatusView(
        account_id=status.account_id,
        # Durable records do not carry the display name.
        account_name=status.account_id,
        cloud_type=status.cloud_type or "unknown",
        status=job_status_from_durable(status.status),
        message=status.error or f"Status: {status.status}",
        progress=100 if active else 0,
        started_at=status.created_at,
        completed_at=status.updated_at if active else None,
        stack_id=status.stack_id,
        store_name=status.store_name,
        store_arn=status.store_arn,
        resources=[],
        error=status.error,
    )


class ProvisioningJobTracker:
    """Accept provisioning requests, run them in the background, and answer progress polls."""

    def __init__(
        self,
        provisioner: AccountProvisioner,
        stacks: StackOrchestrator,
        metrics: MetricsSink,
        job_store: JobStore,
    ) -> None:
        self._provisioner = provisioner
        self._stacks = stacks
        self._metrics = metrics
        self._jobs = job_store
        # Strong references keep background tasks alive until they finish.
        self._tasks: set[asyncio.Task[None]] = set()
        # The task currently provisioning each account; only it may settle that account's job.
        self._running: dict[str, asyncio.Task[None]] = {}

    def _is_running(self, account_id: str) -> bool:
        task = self._running.get(account_id)
        return task is not None and not task.done()

    def _task_finished(self, account_id: str, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if self._running.get(account_id) is task:
            del self._running[account_id]

    async def start_provisioning(self, request: ProvisioningConfig | dict[str, Any]) -> ProvisioningJob:
        config = request if isinstance(request, ProvisioningConfig) else parse_provisioning_config(request)
        job = ProvisioningJob(
            id=str(uuid.uuid4()),
            account_id=config.account_id,
            account_name=config.account_name,
            cloud_type=config.cloud_type,
            status=JOB_PENDING,
            resources=initial_resources(config.cloud_type),
        )
        if self._is_running(config.account_id) or not await self._jobs.claim(job):
            increment_counter("provisioning_conflicts_total")
            raise ConflictError(f"Provisioning already in progress for account {config.account_id}")
        logger.info("provisioning_job_started account_id=%s job_id=%s", config.account_id, job.id)
        task = asyncio.create_task(self._execute(config, job), name=f"provision-{config.account_id}")
        self._tasks.add(task)
        self._running[config.account_id] = task
        task.add_done_callback(functools.partial(self._task_finished, config.account_id))
        return job.model_copy(deep=True)

    async def _execute(self, config: ProvisioningConfig, job: ProvisioningJob) -> None:
        started = time.monotonic()
        try:
            job.status = JOB_IN_PROGRESS
            job.message = "Creating infrastructure..."
            job.progress = 10
            await self._jobs.save(job)

            async def _on_stack_submitted(stack_id: str) -> None:
                job.stack_id = stack_id
                await self._jobs.save(job)

            result = await self._provisioner.provision_account(config, on_stack_submitted=_on_stack_submitted)
            duration_ms = (time.monotonic() - started) * 1000.0
            job.status = JOB_COMPLETED
            job.message = result.message
            job.progress = 100
            job.completed_at = utc_now()
            job.stack_id = result.stack_id or job.stack_id
            job.store_name = result.store_name
            job.store_arn = result.store_arn
            job.resources = [
                resource.model_copy(
                    update={
                        "status": "active",
                        "arn": result.store_arn if resource.type == "datastore" else resource.arn,
                    }
                )
                for resource in job.resources
            ]
            await self._jobs.save(job)
            logger.info(
                "provisioning_job_completed account_id=%s duration_ms=%.0f", config.account_id, duration_ms
            )
            await self._emit(
                PROVISIONING_METRIC,
                OperationMetrics(
                    account_id=config.account_id,
                    cloud_type=config.cloud_type,
                    success=True,
                    duration_ms=duration_ms,
                    resource_count=len(job.resources),
                ),
            )
        except Exception as exc:  # noqa: BLE001 - background failures live in job state
            duration_ms = (time.monotonic() - started) * 1000.0
            error_code = getattr(exc, "error_code", None) or exc.__class__.__name__
            job.status = JOB_FAILED
            job.message = str(exc)
            job.error = str(exc)
            job.completed_at = utc_now()
            job.resources = [
                resource if resource.status == "active" else resource.model_copy(update={"status": "failed"})
                for resource in job.resources
            ]
            logger.error(
                "provisioning_job_failed account_id=%s duration_ms=%.0f error=%s",
                config.account_id,
                duration_ms,
                exc,
            )
            try:
                await self._jobs.save(job)
            except Exception as save_exc:  # noqa: BLE001 - nothing left to report to
                logger.error("provisioning_job_save_failed account_id=%s error=%s", config.account_id, save_exc)
            await self._emit(
                PROVISIONING_METRIC,
                OperationMetrics(
                    account_id=config.account_id,
                    cloud_type=config.cloud_type,
                    success=False,
                    duration_ms=duration_ms,
                    error_code=error_code,
                ),
            )

    async def _emit(self, event_name: str, record: OperationMetrics) -> None:
        try:
            await self._metrics.emit(event_name, record)
        except Exception as exc:  # noqa: BLE001 - metrics are best effort
            logger.warning("operation_metrics_failed event=%s account_id=%s error=%s", event_name, record.account_id, exc)

    async def get_provisioning_status(self, account_id: str) -> ProvisioningStatusView:
        job = await self._jobs.get(account_id)
        if job is not None:
            if job.status == JOB_IN_PROGRESS and job.stack_id:
                job = await self._reconcile(job)
            return job_to_view(job)
        durable = await self._provisioner.get_provisioning_status(account_id)
        if durable is None:
            raise NotFoundError(f"No provisioning status found for account {account_id}")
        return durable_to_view(durable)

    async def _reconcile(self, job: ProvisioningJob) -> ProvisioningJob:
        """Refresh an in-flight job's progress from the live stack.

        Terminal states are written by the task that runs the provisioning, after
        the durable parameters are in place. While this process owns that task the
        job stays ``in_progress`` here, whatever the stack reports.
        """
        stack_name = self._provisioner.stack_name(job.account_id)
        try:
            description, resources = await asyncio.gather(
                self._stacks.describe_stack(stack_name),
                self._stacks.describe_stack_resources(stack_name),
            )
        except Exception as exc:  # noqa: BLE001 - serve the last known state instead
            logger.warning("provisioning_reconcile_failed account_id=%s error=%s", job.account_id, exc)
            return job
        if description is None:
            return job
        latest = await self._jobs.get(job.account_id)
        if latest is None or latest.id != job.id or latest.status != JOB_IN_PROGRESS:
            # The background task settled the job while the orchestrator was being read.
            return latest or job
        job = latest
        status = description.status
        owned = self._is_running(job.account_id)
        if _is_complete(status):
            if owned:
                job.progress = 95
                job.message = "Finalizing configuration..."
            else:
                job.status = JOB_COMPLETED
                job.progress = 100
                job.message = "Infrastructure ready"
                job.completed_at = utc_now()
        elif "FAILED" in status or "ROLLBACK" in status:
            job.message = description.status_reason or "Provisioning failed"
            if not owned:
                job.status = JOB_FAILED
                job.error = job.message
                job.completed_at = utc_now()
        elif "IN_PROGRESS" in status:
            job.progress = compute_progress(resources)
            job.message = progress_message(resources)
        job.resources = map_stack_resources(resources)
        await self._jobs.save(job)
        return job

    async def get_active_jobs(self) -> list[ProvisioningJob]:
        return await self._jobs.list_active()

    async def deprovision(self, account_id: str) -> dict[str, str]:
        logger.info("deprovisioning_requested account_id=%s", account_id)
        started = time.monotonic()
        job = await self._jobs.get(account_id)
        if self._is_running(account_id) or (job is not None and job.status == JOB_IN_PROGRESS):
            raise ConflictError("Cannot deprovision while provisioning is in progress")
        cloud_type = job.cloud_type if job is not None else await self._provisioner.get_account_cloud_type(account_id)
        try:
            await self._provisioner.deprovision_account(account_id, job.account_name if job else None)
        except Exception as exc:
            await self._emit(
                DEPROVISIONING_METRIC,
                OperationMetrics(
                    account_id=account_id,
                    cloud_type=cloud_type,
                    success=False,
                    duration_ms=(time.monotonic() - started) * 1000.0,
                    error_code=getattr(exc, "error_code", None) or exc.__class__.__name__,
                ),
            )
            raise
        await self._jobs.delete(account_id)
        await self._emit(
            DEPROVISIONING_METRIC,
            OperationMetrics(
                account_id=account_id,
                cloud_type=cloud_type,
                success=True,
                duration_ms=(time.monotonic() - started) * 1000.0,
            ),
        )
        return {"message": f"Account {account_id} deprovisioned successfully"}

    async def drain(self) -> None:
        # Wait for in-flight background provisioning; used on shutdown and in tests.
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
