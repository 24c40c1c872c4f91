from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from tenantplane.core.config import get_settings
from tenantplane.core.errors import TransientPublishError
from tenantplane.providers.aws import call_aws, client_error_message, create_client
from tenantplane.providers.events.base import (
    DEPROVISIONING_FAILED,
    DETAIL_TYPES,
    PROVISIONING_FAILED,
    PROVISIONING_SUCCEEDED,
)


logger = logging.getLogger(__name__)

_EVENTS_INTEGRATION = "events.eventbridge"
_SNS_INTEGRATION = "events.sns"


class EventBridgePublisher:
    """Publish lifecycle events to EventBridge with optional SNS fan-out."""

    def __init__(
        self,
        region: str | None = None,
        *,
        bus_name: str | None = None,
        source: str | None = None,
        success_topic_arn: str | None = None,
        failure_topic_arn: str | None = None,
        events_client: Any | None = None,
        sns_client: Any | None = None,
    ) -> None:
        settings = get_settings()
        self._region = region or settings.aws_region
        self._bus_name = bus_name or settings.resolved_event_bus_name()
        self._source = source or settings.event_source
        self._success_topic_arn = success_topic_arn or settings.sns_provisioning_success_arn
        self._failure_topic_arn = failure_topic_arn or settings.sns_provisioning_failure_arn
        self._events = events_client
        self._sns = sns_client

    def _get_events(self) -> Any:
        if self._events is None:
            self._events = create_client("events", region=self._region)
        return self._events

    def _get_sns(self) -> Any:
        if self._sns is None:
            self._sns = create_client("sns", region=self._region)
        return self._sns

    def _topic_for(self, event_kind: str) -> str | None:
        if event_kind == PROVISIONING_SUCCEEDED:
            return self._success_topic_arn
        if event_kind in {PROVISIONING_FAILED, DEPROVISIONING_FAILED}:
            return self._failure_topic_arn
        return None

    async def publish(self, event_kind: str, payload: dict[str, Any]) -> None:
        detail_type = DETAIL_TYPES.get(event_kind)
        if detail_type is None:
            raise TransientPublishError(f"Unknown event kind: {event_kind}")
        detail = {**payload, "timestamp": payload.get("timestamp") or datetime.now(timezone.utc).isoformat()}
        entry = {
            "EventBusName": self._bus_name,
            "Source": self._source,
            "DetailType": detail_type,
            "Detail": json.dumps(detail, default=str),
            "Time": datetime.now(timezone.utc),
        }
        events = self._get_events()
        try:
            result = await call_aws(_EVENTS_INTEGRATION, events.put_events, Entries=[entry])
        except Exception as exc:
            raise TransientPublishError(f"EventBridge publish failed: {client_error_message(exc)}") from exc
        if result.get("FailedEntryCount"):
            failed = next((item for item in result.get("Entries") or [] if item.get("ErrorCode")), {})
            raise TransientPublishError(
                f"EventBridge publish failed: {failed.get('ErrorCode')} {failed.get('ErrorMessage')}"
            )
        logger.info("provisioning_event_published kind=%s account_id=%s", event_kind, payload.get("account_id"))

        topic_arn = self._topic_for(event_kind)
        if topic_arn:
            await self._publish_to_sns(topic_arn, detail_type, detail)

    async def _publish_to_sns(self, topic_arn: str, detail_type: str, detail: dict[str, Any]) -> None:
        sns = self._get_sns()
        attributes = {
            name: {"DataType": "String", "StringValue": str(detail.get(key) or "")}
            for name, key in (("accountId", "account_id"), ("cloudType", "cloud_type"), ("status", "status"))
        }
        try:
            await call_aws(
                _SNS_INTEGRATION,
                sns.publish,
                TopicArn=topic_arn,
                Message=json.dumps({"event_type": detail_type, **detail}, indent=2, default=str),
                Subject=f"Account Provisioning: {detail_type}",
                MessageAttributes=attributes,
            )
        except Exception as exc:
            raise TransientPublishError(f"SNS notification failed: {client_error_message(exc)}") from exc
