from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


CloudType = Literal["public", "private"]
BillingMode = Literal["PAY_PER_REQUEST", "PROVISIONED"]
StatusValue = Literal["pending", "creating", "active", "failed", "deleting", "deleted"]
JobStatus = Literal["pending", "in_progress", "completed", "failed"]
ResourceType = Literal["datastore", "iam", "parameters", "stack"]
ResourceStatus = Literal["pending", "creating", "active", "failed", "deleting"]

CLOUD_PUBLIC = "public"
CLOUD_PRIVATE = "private"

STATUS_PENDING = "pending"
STATUS_CREATING = "creating"
STATUS_ACTIVE = "active"
STATUS_FAILED = "failed"
STATUS_DELETING = "deleting"
STATUS_DELETED = "deleted"

JOB_PENDING = "pending"
JOB_IN_PROGRESS = "in_progress"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

NON_TERMINAL_JOB_STATUSES = frozenset({JOB_PENDING, JOB_IN_PROGRESS})


def utc_now() -> datetime:
    # Use UTC timestamps for status records shared across processes.
    return datetime.now(timezone.utc)


def status_transition_allowed(current: str | None, target: str) -> bool:
    # Lifecycle is monotonic; failed/deleted only move forward through a brand-new attempt.
    allowed: dict[str | None, set[str]] = {
        None: {STATUS_PENDING, STATUS_CREATING, STATUS_ACTIVE},
        STATUS_PENDING: {STATUS_CREATING, STATUS_ACTIVE, STATUS_FAILED},
        STATUS_CREATING: {STATUS_ACTIVE, STATUS_FAILED},
        STATUS_ACTIVE: {STATUS_ACTIVE, STATUS_DELETING},
        STATUS_DELETING: {STATUS_DELETED, STATUS_FAILED},
        STATUS_FAILED: {STATUS_CREATING, STATUS_ACTIVE, STATUS_DELETING},
        STATUS_DELETED: {STATUS_CREATING, STATUS_ACTIVE},
    }
    return target in allowed.get(current, set())


def job_status_from_durable(status: str) -> str:
    # Collapse the durable status vocabulary into the job vocabulary for pollers.
    if status == STATUS_ACTIVE:
        return JOB_COMPLETED
    if status in {STATUS_CREATING, STATUS_DELETING}:
        return JOB_IN_PROGRESS
    if status == STATUS_FAILED:
        return JOB_FAILED
    return JOB_PENDING


class ProvisioningConfig(BaseModel):
    """Input to one provisioning attempt; immutable once submitted."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    account_id: str = Field(min_length=1)
    account_name: str = Field(min_length=1)
    cloud_type: CloudType
    billing_mode: BillingMode = "PAY_PER_REQUEST"
    read_capacity: int = Field(default=5, ge=1)
    write_capacity: int = Field(default=5, ge=1)
    enable_auto_scaling: bool = False
    enable_point_in_time_recovery: bool = True
    enable_deletion_protection: bool = True

    @field_validator("account_id", "account_name")
    @classmethod
    def _strip_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


@dataclass(frozen=True)
class ProvisioningResult:
    success: bool
    cloud_type: str
    message: str
    store_name: str | None = None
    store_arn: str | None = None
    stack_id: str | None = None


@dataclass(frozen=True)
class ProvisioningStatus:
    """Durable per-account lifecycle record read back from the parameter store."""

    account_id: str
    status: str
    cloud_type: str | None = None
    store_name: str | None = None
    store_arn: str | None = None
    stack_id: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class RoutingEntry:
    account_id: str
    is_private: bool
    store_name: str
    store_arn: str | None = None
    cached_at: float = 0.0

    @property
    def cloud_type(self) -> str:
        return CLOUD_PRIVATE if self.is_private else CLOUD_PUBLIC


class ProvisioningResource(BaseModel):
    type: ResourceType
    name: str
    status: ResourceStatus = "pending"
    arn: str | None = None


class ProvisioningJob(BaseModel):
    """Pollable record of one in-flight provisioning attempt."""

    id: str
    account_id: str
    account_name: str
    cloud_type: CloudType
    status: JobStatus = JOB_PENDING
    message: str = "Initializing provisioning..."
    progress: int = Field(default=0, ge=0, le=100)
    resources: list[ProvisioningResource] = Field(default_factory=list)
    stack_id: str | None = None
    store_name: str | None = None
    store_arn: str | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in NON_TERMINAL_JOB_STATUSES


class ProvisioningStatusView(BaseModel):
    account_id: str
    account_name: str
    cloud_type: str
    status: JobStatus
    message: str
    progress: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    stack_id: str | None = None
    store_name: str | None = None
    store_arn: str | None = None
    resources: list[ProvisioningResource] = Field(default_factory=list)
    error: str | None = None


@dataclass
class BootstrapResult:
    success: bool
    message: str
    details: list[str] = field(default_factory=list)
    completed_steps: list[str] = field(default_factory=list)
    failed_step: str | None = None
