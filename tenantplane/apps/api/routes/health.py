from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.core.config import get_settings
from tenantplane.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    environment: str


class TelemetryResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    integrations: dict[str, dict[str, Any]]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok", environment=get_settings().environment)
    return success_response(request=request, data=payload)


@router.get("/health/telemetry", response_model=SuccessEnvelope[TelemetryResponse])
async def telemetry(request: Request, window_s: int = Query(default=300, ge=1, le=86400)) -> dict:
    # Process-local view of routing cache counters, breaker gauges and integration latency.
    payload = TelemetryResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        integrations=external_latency_by_integration(window_s),
    )
    return success_response(request=request, data=payload)
