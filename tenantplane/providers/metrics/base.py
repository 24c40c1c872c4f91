from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


PROVISIONING_METRIC = "provisioning"
DEPROVISIONING_METRIC = "deprovisioning"


@dataclass(frozen=True)
class OperationMetrics:
    account_id: str
    cloud_type: str
    success: bool
    duration_ms: float
    resource_count: int | None = None
    error_code: str | None = None


class MetricsSink(Protocol):
    async def emit(self, event_name: str, record: OperationMetrics) -> None:
        ...
