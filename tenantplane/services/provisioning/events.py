from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from tenantplane.providers.events.base import (
    DEPROVISIONING_FAILED,
    DEPROVISIONING_STARTED,
    DEPROVISIONING_SUCCEEDED,
    PROVISIONING_FAILED,
    PROVISIONING_STARTED,
    PROVISIONING_SUCCEEDED,
    EventPublisher,
)


logger = logging.getLogger(__name__)

# Substrings that mark a failure as worth retrying by downstream consumers.
RETRYABLE_PATTERNS = (
    "throttl",
    "timeout",
    "limit exceeded",
    "try again",
    "temporarily unavailable",
    "service unavailable",
    "internal error",
    "connection",
)


def is_retryable_message(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in RETRYABLE_PATTERNS)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProvisioningEventPublisher:
    """Build lifecycle payloads and publish them without ever failing the caller."""

    def __init__(self, publisher: EventPublisher) -> None:
        self._publisher = publisher

    async def _publish(self, event_kind: str, payload: dict[str, Any]) -> None:
        try:
            await self._publisher.publish(event_kind, payload)
        except Exception as exc:  # noqa: BLE001 - lifecycle events are best effort
            logger.warning(
                "provisioning_event_publish_failed kind=%s account_id=%s error=%s",
                event_kind,
                payload.get("account_id"),
                exc,
            )

    def _base(self, account_id: str, account_name: str, cloud_type: str, status: str) -> dict[str, Any]:
        return {
            "account_id": account_id,
            "account_name": account_name,
            "cloud_type": cloud_type,
            "status": status,
            "timestamp": _now_iso(),
        }

    async def started(
        self,
        account_id: str,
        account_name: str,
        cloud_type: str,
        request_id: str,
        *,
        deprovisioning: bool = False,
    ) -> None:
        payload = self._base(account_id, account_name, cloud_type, "started")
        payload["request_id"] = request_id
        await self._publish(DEPROVISIONING_STARTED if deprovisioning else PROVISIONING_STARTED, payload)

    async def succeeded(
        self,
        account_id: str,
        account_name: str,
        cloud_type: str,
        *,
        request_id: str,
        duration_ms: float,
        store_name: str | None = None,
        store_arn: str | None = None,
        stack_id: str | None = None,
        deprovisioning: bool = False,
    ) -> None:
        payload = self._base(account_id, account_name, cloud_type, "success")
        payload.update(
            {
                "request_id": request_id,
                "duration_ms": round(duration_ms),
                "store_name": store_name or "",
                "store_arn": store_arn,
                "stack_id": stack_id,
            }
        )
        await self._publish(DEPROVISIONING_SUCCEEDED if deprovisioning else PROVISIONING_SUCCEEDED, payload)

    async def failed(
        self,
        account_id: str,
        account_name: str,
        cloud_type: str,
        error: Exception | str,
        *,
        request_id: str,
        duration_ms: float | None = None,
        error_code: str | None = None,
        deprovisioning: bool = False,
    ) -> None:
        message = str(error)
        payload = self._base(account_id, account_name, cloud_type, "failed")
        payload.update(
            {
                "request_id": request_id,
                "error": message,
                "error_code": error_code or (error.__class__.__name__ if isinstance(error, Exception) else None),
                "retryable": is_retryable_message(message),
                "duration_ms": round(duration_ms) if duration_ms is not None else None,
            }
        )
        await self._publish(DEPROVISIONING_FAILED if deprovisioning else PROVISIONING_FAILED, payload)
