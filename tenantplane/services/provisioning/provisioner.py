from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from tenantplane.core.config import Settings, get_settings
from tenantplane.core.errors import ProvisioningFailure, StackOperationError, ValidationError
from tenantplane.domain.provisioning import (
    CLOUD_PRIVATE,
    CLOUD_PUBLIC,
    STATUS_ACTIVE,
    STATUS_CREATING,
    STATUS_DELETED,
    STATUS_DELETING,
    STATUS_FAILED,
    ProvisioningConfig,
    ProvisioningResult,
    ProvisioningStatus,
    status_transition_allowed,
    utc_now,
)
from tenantplane.providers.events.base import EventPublisher
from tenantplane.providers.parameters.base import ParameterStore
from tenantplane.providers.stacks.base import ACTIVE_STACK_STATUSES, StackDescription, StackOrchestrator
from tenantplane.providers.stacks.template import PRIVATE_ACCOUNT_TEMPLATE
from tenantplane.services.provisioning.events import ProvisioningEventPublisher


logger = logging.getLogger(__name__)

STACK_CAPABILITIES = ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND"]
# Stacks left behind by a failed create must be removed before a new attempt.
_REPLACEABLE_STACK_STATUSES = frozenset({"CREATE_FAILED", "ROLLBACK_COMPLETE", "ROLLBACK_FAILED"})
# SSM standard parameters hold at most 4 KB.
_MAX_ERROR_LENGTH = 4000

KEY_CLOUD_TYPE = "cloud-type"
KEY_TABLE_NAME = "dynamodb/table-name"
KEY_TABLE_ARN = "dynamodb/table-arn"
KEY_STREAM_ARN = "dynamodb/stream-arn"
KEY_STATUS = "provisioning-status"
KEY_ERROR = "provisioning-error"
KEY_STACK_ID = "provisioning/stack-id"
KEY_CREATED_AT = "provisioning/created-at"
KEY_UPDATED_AT = "provisioning/updated-at"

ACCOUNT_PARAMETER_KEYS = (
    KEY_CLOUD_TYPE,
    KEY_TABLE_NAME,
    KEY_TABLE_ARN,
    KEY_STREAM_ARN,
    KEY_STATUS,
    KEY_ERROR,
    KEY_STACK_ID,
    KEY_CREATED_AT,
    KEY_UPDATED_AT,
)


def account_parameter(account_id: str, key: str) -> str:
    return f"/accounts/{account_id}/{key}"


def parse_provisioning_config(data: dict[str, Any]) -> ProvisioningConfig:
    """Validate raw input into a config; nothing is written when this raises."""
    payload = dict(data)
    # Hybrid accounts get dedicated infrastructure.
    if payload.get("cloud_type") == "hybrid":
        payload["cloud_type"] = CLOUD_PRIVATE
    try:
        return ProvisioningConfig.model_validate(payload)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise ValidationError(f"Invalid provisioning config: {details}") from exc


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


RoutingListener = Callable[[str], None]
StackSubmittedHook = Callable[[str], Awaitable[None] | None]


class AccountProvisioner:
    def __init__(
        self,
        parameters: ParameterStore,
        stacks: StackOrchestrator,
        events: EventPublisher,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._parameters = parameters
        self._stacks = stacks
        self._events = ProvisioningEventPublisher(events)
        self._settings = settings or get_settings()
        self._routing_listeners: list[RoutingListener] = []

    @property
    def shared_store_name(self) -> str:
        return self._settings.resolved_shared_table_name()

    def add_routing_listener(self, listener: RoutingListener) -> None:
        # Listeners drop cached routing facts right after they change.
        self._routing_listeners.append(listener)

    def _notify_routing_change(self, account_id: str) -> None:
        for listener in self._routing_listeners:
            listener(account_id)

    def stack_name(self, account_id: str) -> str:
        return f"{self._settings.project_name}-{self._settings.environment}-account-{account_id}"

    async def _put(self, account_id: str, key: str, value: str) -> None:
        await self._parameters.put(account_parameter(account_id, key), value, overwrite=True)

    async def _get(self, account_id: str, key: str) -> str | None:
        return await self._parameters.get(account_parameter(account_id, key))

    async def _write_status(self, account_id: str, status: str, error: str | None = None) -> None:
        current = await self._get(account_id, KEY_STATUS)
        if not status_transition_allowed(current, status):
            # The parameter store has no compare-and-swap; record the anomaly and keep the newest write.
            logger.warning(
                "provisioning_status_out_of_order account_id=%s current=%s target=%s",
                account_id,
                current,
                status,
            )
        now = utc_now().isoformat()
        if current in {None, STATUS_FAILED, STATUS_DELETED} and status != STATUS_FAILED:
            await self._put(account_id, KEY_CREATED_AT, now)
        await self._put(account_id, KEY_STATUS, status)
        await self._put(account_id, KEY_UPDATED_AT, now)
        if error:
            await self._put(account_id, KEY_ERROR, error[:_MAX_ERROR_LENGTH])

    async def provision_account(
        self,
        config: ProvisioningConfig,
        *,
        on_stack_submitted: StackSubmittedHook | None = None,
    ) -> ProvisioningResult:
        logger.info("provisioning_started account_id=%s cloud_type=%s", config.account_id, config.cloud_type)
        request_id = str(uuid.uuid4())
        started = time.monotonic()
        await self._events.started(config.account_id, config.account_name, config.cloud_type, request_id)
        try:
            if config.cloud_type == CLOUD_PUBLIC:
                result = await self._provision_public(config)
            else:
                result = await self._provision_private(config, on_stack_submitted)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("provisioning_failed account_id=%s error=%s", config.account_id, message)
            try:
                await self._write_status(config.account_id, STATUS_FAILED, error=message)
            except Exception as write_exc:  # noqa: BLE001 - original failure is the one surfaced
                logger.error(
                    "provisioning_failure_record_failed account_id=%s error=%s", config.account_id, write_exc
                )
            self._notify_routing_change(config.account_id)
            await self._events.failed(
                config.account_id,
                config.account_name,
                config.cloud_type,
                exc,
                request_id=request_id,
                duration_ms=(time.monotonic() - started) * 1000.0,
            )
            raise ProvisioningFailure(
                config.account_id,
                f"Failed to provision account {config.account_id}: {message}",
                cause=exc,
            ) from exc

        await self._events.succeeded(
            config.account_id,
            config.account_name,
            config.cloud_type,
            request_id=request_id,
            duration_ms=(time.monotonic() - started) * 1000.0,
            store_name=result.store_name,
            store_arn=result.store_arn,
            stack_id=result.stack_id,
        )
        logger.info("provisioning_succeeded account_id=%s store=%s", config.account_id, result.store_name)
        return result

    async def _provision_public(self, config: ProvisioningConfig) -> ProvisioningResult:
        shared = self.shared_store_name
        # Rewriting the same facts is harmless, so repeated calls converge on one state.
        await self._put(config.account_id, KEY_CLOUD_TYPE, CLOUD_PUBLIC)
        await self._put(config.account_id, KEY_TABLE_NAME, shared)
        await self._write_status(config.account_id, STATUS_ACTIVE)
        self._notify_routing_change(config.account_id)
        return ProvisioningResult(
            success=True,
            cloud_type=CLOUD_PUBLIC,
            message=f"Account registered in shared table: {shared}",
            store_name=shared,
        )

    async def _provision_private(
        self,
        config: ProvisioningConfig,
        on_stack_submitted: StackSubmittedHook | None,
    ) -> ProvisioningResult:
        account_id = config.account_id
        stack_name = self.stack_name(account_id)
        await self._write_status(account_id, STATUS_CREATING)
        await self._put(account_id, KEY_CLOUD_TYPE, CLOUD_PRIVATE)
        # Private routing facts are unusable until the stack completes.
        self._notify_routing_change(account_id)

        description = await self._ensure_stack(config, stack_name, on_stack_submitted)
        outputs = description.outputs
        table_name = outputs.get("TableName")
        if not table_name:
            raise StackOperationError(f"Stack {stack_name} completed without a TableName output")
        table_arn = outputs.get("TableArn")
        stream_arn = outputs.get("TableStreamArn")

        await self._put(account_id, KEY_TABLE_NAME, table_name)
        if table_arn:
            await self._put(account_id, KEY_TABLE_ARN, table_arn)
        if stream_arn:
            await self._put(account_id, KEY_STREAM_ARN, stream_arn)
        await self._write_status(account_id, STATUS_ACTIVE)
        self._notify_routing_change(account_id)
        return ProvisioningResult(
            success=True,
            cloud_type=CLOUD_PRIVATE,
            message=f"Dedicated table provisioned: {table_name}",
            store_name=table_name,
            store_arn=table_arn,
            stack_id=description.stack_id,
        )

    async def _ensure_stack(
        self,
        config: ProvisioningConfig,
        stack_name: str,
        on_stack_submitted: StackSubmittedHook | None,
    ) -> StackDescription:
        max_wait_s = self._settings.stack_max_wait_s
        existing = await self._stacks.describe_stack(stack_name)
        if existing is not None and existing.status in ACTIVE_STACK_STATUSES:
            # A finished stack from an earlier attempt already holds the table.
            logger.info("provisioning_stack_reused name=%s status=%s", stack_name, existing.status)
            if existing.stack_id:
                await self._record_stack_id(config.account_id, existing.stack_id, on_stack_submitted)
            return existing
        if existing is not None and existing.status in _REPLACEABLE_STACK_STATUSES:
            logger.info("provisioning_stack_replaced name=%s status=%s", stack_name, existing.status)
            await self._stacks.delete_stack(stack_name)
            await self._stacks.wait_until_delete_complete(stack_name, max_wait_s)
        elif existing is not None:
            raise StackOperationError(f"Stack {stack_name} is busy ({existing.status})")

        template_ref = await self._stacks.ensure_template(PRIVATE_ACCOUNT_TEMPLATE)
        stack_id = await self._stacks.create_stack(
            stack_name,
            template_ref,
            self._stack_parameters(config),
            STACK_CAPABILITIES,
            self._stack_tags(config),
        )
        logger.info("provisioning_stack_submitted name=%s stack_id=%s", stack_name, stack_id)
        await self._record_stack_id(config.account_id, stack_id, on_stack_submitted)
        return await self._stacks.wait_until_create_complete(stack_name, max_wait_s)

    async def _record_stack_id(
        self,
        account_id: str,
        stack_id: str,
        on_stack_submitted: StackSubmittedHook | None,
    ) -> None:
        await self._put(account_id, KEY_STACK_ID, stack_id)
        if on_stack_submitted is None:
            return
        outcome = on_stack_submitted(stack_id)
        if asyncio.iscoroutine(outcome):
            await outcome

    def _stack_parameters(self, config: ProvisioningConfig) -> dict[str, str]:
        return {
            "AccountId": config.account_id,
            "AccountName": config.account_name,
            "Environment": self._settings.environment,
            "ProjectName": self._settings.project_name,
            "BillingMode": config.billing_mode,
            "ReadCapacity": str(config.read_capacity),
            "WriteCapacity": str(config.write_capacity),
            "EnablePointInTimeRecovery": str(config.enable_point_in_time_recovery).lower(),
            "EnableDeletionProtection": str(config.enable_deletion_protection).lower(),
            "EnableAutoScaling": str(config.enable_auto_scaling).lower(),
        }

    def _stack_tags(self, config: ProvisioningConfig) -> dict[str, str]:
        return {
            "AccountId": config.account_id,
            "AccountName": config.account_name,
            "Environment": self._settings.environment,
            "CloudType": config.cloud_type,
            "ManagedBy": self._settings.app_name,
        }

    async def deprovision_account(self, account_id: str, account_name: str | None = None) -> None:
        logger.info("deprovisioning_started account_id=%s", account_id)
        request_id = str(uuid.uuid4())
        started = time.monotonic()
        name = account_name or account_id
        cloud_type = await self.get_account_cloud_type(account_id)
        await self._events.started(account_id, name, cloud_type, request_id, deprovisioning=True)
        try:
            stack_name = self.stack_name(account_id)
            existing = await self._stacks.describe_stack(stack_name)
            if existing is not None and existing.status != "DELETE_COMPLETE":
                await self._write_status(account_id, STATUS_DELETING)
                self._notify_routing_change(account_id)
                await self._stacks.delete_stack(stack_name)
                await self._stacks.wait_until_delete_complete(stack_name, self._settings.stack_max_wait_s)
                logger.info("deprovisioning_stack_deleted name=%s", stack_name)
            # Leftover routing facts would route traffic to a deleted store; always clean them.
            await self._parameters.delete_many(
                [account_parameter(account_id, key) for key in ACCOUNT_PARAMETER_KEYS]
            )
            self._notify_routing_change(account_id)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("deprovisioning_failed account_id=%s error=%s", account_id, message)
            try:
                await self._write_status(account_id, STATUS_FAILED, error=message)
            except Exception as write_exc:  # noqa: BLE001 - original failure is the one surfaced
                logger.error("deprovisioning_failure_record_failed account_id=%s error=%s", account_id, write_exc)
            self._notify_routing_change(account_id)
            await self._events.failed(
                account_id,
                name,
                cloud_type,
                exc,
                request_id=request_id,
                duration_ms=(time.monotonic() - started) * 1000.0,
                deprovisioning=True,
            )
            raise ProvisioningFailure(
                account_id,
                f"Failed to deprovision account {account_id}: {message}",
                cause=exc,
            ) from exc

        await self._events.succeeded(
            account_id,
            name,
            cloud_type,
            request_id=request_id,
            duration_ms=(time.monotonic() - started) * 1000.0,
            deprovisioning=True,
        )
        logger.info("deprovisioning_succeeded account_id=%s", account_id)

    async def get_provisioning_status(self, account_id: str) -> ProvisioningStatus | None:
        status = await self._get(account_id, KEY_STATUS)
        if status is None:
            return None
        cloud_type, table_name, table_arn, stack_id, error, created_at, updated_at = await asyncio.gather(
            self._get(account_id, KEY_CLOUD_TYPE),
            self._get(account_id, KEY_TABLE_NAME),
            self._get(account_id, KEY_TABLE_ARN),
            self._get(account_id, KEY_STACK_ID),
            self._get(account_id, KEY_ERROR),
            self._get(account_id, KEY_CREATED_AT),
            self._get(account_id, KEY_UPDATED_AT),
        )
        return ProvisioningStatus(
            account_id=account_id,
            status=status,
            cloud_type=cloud_type,
            store_name=table_name,
            store_arn=table_arn,
            stack_id=stack_id,
            # A stale error from an earlier attempt is not part of an active record.
            error=error if status == STATUS_FAILED else None,
            created_at=_parse_timestamp(created_at),
            updated_at=_parse_timestamp(updated_at),
        )

    async def get_account_cloud_type(self, account_id: str) -> str:
        try:
            value = await self._get(account_id, KEY_CLOUD_TYPE)
        except Exception as exc:  # noqa: BLE001 - only used to label events
            logger.warning("cloud_type_lookup_failed account_id=%s error=%s", account_id, exc)
            return CLOUD_PUBLIC
        return value if value in {CLOUD_PUBLIC, CLOUD_PRIVATE} else CLOUD_PUBLIC

    async def stack_exists(self, account_id: str) -> bool:
        description = await self._stacks.describe_stack(self.stack_name(account_id))
        return description is not None and description.status in ACTIVE_STACK_STATUSES
