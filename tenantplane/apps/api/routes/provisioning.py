from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tenantplane.apps.api.deps import get_router, get_tracker
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.domain.provisioning import ProvisioningJob, ProvisioningStatusView
from tenantplane.services.provisioning.jobs import ProvisioningJobTracker
from tenantplane.services.routing import MultiTenantRouter


router = APIRouter(prefix="/provisioning", tags=["provisioning"], responses=DEFAULT_ERROR_RESPONSES)


class ProvisioningRequest(BaseModel):
    # Accept both snake_case and the camelCase names used by the admin console.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    account_id: str = Field(min_length=1)
    account_name: str = Field(min_length=1)
    cloud_type: Literal["public", "private", "hybrid"]
    billing_mode: Literal["PAY_PER_REQUEST", "PROVISIONED"] | None = None
    read_capacity: int | None = None
    write_capacity: int | None = None
    enable_auto_scaling: bool | None = None
    enable_point_in_time_recovery: bool | None = None
    enable_deletion_protection: bool | None = None


class DeprovisionResponse(BaseModel):
    message: str


class RoutingResponse(BaseModel):
    account_id: str
    cloud_type: str
    is_private: bool
    store_name: str


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[ProvisioningJob],
)
async def start_provisioning(
    payload: ProvisioningRequest,
    request: Request,
    tracker: ProvisioningJobTracker = Depends(get_tracker),
) -> dict:
    # Unset optional fields fall back to the config defaults.
    job = await tracker.start_provisioning(payload.model_dump(exclude_none=True))
    return success_response(request=request, data=job)


@router.get("/active", response_model=SuccessEnvelope[list[ProvisioningJob]])
async def list_active_jobs(
    request: Request,
    tracker: ProvisioningJobTracker = Depends(get_tracker),
) -> dict:
    jobs = await tracker.get_active_jobs()
    return success_response(request=request, data=jobs)


@router.get("/{account_id}/status", response_model=SuccessEnvelope[ProvisioningStatusView])
async def get_provisioning_status(
    account_id: str,
    request: Request,
    tracker: ProvisioningJobTracker = Depends(get_tracker),
) -> dict:
    view = await tracker.get_provisioning_status(account_id)
    return success_response(request=request, data=view)


@router.get("/{account_id}/routing", response_model=SuccessEnvelope[RoutingResponse])
async def get_routing(
    account_id: str,
    request: Request,
    tenant_router: MultiTenantRouter = Depends(get_router),
) -> dict:
    entry = await tenant_router.resolve(account_id)
    payload = RoutingResponse(
        account_id=entry.account_id,
        cloud_type=entry.cloud_type,
        is_private=entry.is_private,
        store_name=entry.store_name,
    )
    return success_response(request=request, data=payload)


@router.delete("/{account_id}", response_model=SuccessEnvelope[DeprovisionResponse])
async def deprovision_account(
    account_id: str,
    request: Request,
    tracker: ProvisioningJobTracker = Depends(get_tracker),
) -> dict:
    result = await tracker.deprovision(account_id)
    return success_response(request=request, data=DeprovisionResponse(**result))
