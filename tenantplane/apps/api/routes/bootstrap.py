from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from tenantplane.apps.api.deps import get_bootstrap
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.services.bootstrap import BootstrapSequencer


router = APIRouter(prefix="/bootstrap", tags=["bootstrap"], responses=DEFAULT_ERROR_RESPONSES)


class BootstrapResponse(BaseModel):
    success: bool
    message: str
    details: list[str]
    completed_steps: list[str]
    failed_step: str | None = None


class BootstrapStatusResponse(BaseModel):
    bootstrapped: bool


@router.get("/status", response_model=SuccessEnvelope[BootstrapStatusResponse])
async def bootstrap_status(
    request: Request,
    sequencer: BootstrapSequencer = Depends(get_bootstrap),
) -> dict:
    bootstrapped = await sequencer.is_bootstrapped()
    return success_response(request=request, data=BootstrapStatusResponse(bootstrapped=bootstrapped))


@router.post("", response_model=SuccessEnvelope[BootstrapResponse])
async def run_bootstrap(
    request: Request,
    sequencer: BootstrapSequencer = Depends(get_bootstrap),
) -> dict:
    result = await sequencer.run()
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": "BOOTSTRAP_FAILED",
                "message": result.message,
                "failed_step": result.failed_step,
                "completed_steps": result.completed_steps,
            },
        )
    return success_response(request=request, data=BootstrapResponse(**asdict(result)))
