from __future__ import annotations

from typing import Any, Protocol


PROVISIONING_STARTED = "provisioning-started"
PROVISIONING_SUCCEEDED = "provisioning-succeeded"
PROVISIONING_FAILED = "provisioning-failed"
DEPROVISIONING_STARTED = "deprovisioning-started"
DEPROVISIONING_SUCCEEDED = "deprovisioning-succeeded"
DEPROVISIONING_FAILED = "deprovisioning-failed"

# Human-readable detail types used on the event bus.
DETAIL_TYPES = {
    PROVISIONING_STARTED: "Account Provisioning Started",
    PROVISIONING_SUCCEEDED: "Account Provisioning Completed",
    PROVISIONING_FAILED: "Account Provisioning Failed",
    DEPROVISIONING_STARTED: "Account Deprovisioning Started",
    DEPROVISIONING_SUCCEEDED: "Account Deprovisioning Completed",
    DEPROVISIONING_FAILED: "Account Deprovisioning Failed",
}


class EventPublisher(Protocol):
    async def publish(self, event_kind: str, payload: dict[str, Any]) -> None:
        ...
