from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from tenantplane.core.config import get_settings
from tenantplane.providers.aws import call_aws, client_error_message, create_client
from tenantplane.providers.metrics.base import DEPROVISIONING_METRIC, PROVISIONING_METRIC, OperationMetrics


logger = logging.getLogger(__name__)

_INTEGRATION = "metrics.cloudwatch"
# PutMetricData accepts at most 1000 data points per request.
_MAX_DATUMS = 1000

_OPERATIONS = {
    PROVISIONING_METRIC: ("Provisioning", "AccountProvisioning"),
    DEPROVISIONING_METRIC: ("Deprovisioning", "AccountDeprovisioning"),
}


def build_metric_data(event_name: str, record: OperationMetrics, *, environment: str) -> list[dict[str, Any]]:
    """Expand one operation record into CloudWatch datums."""
    prefix, operation = _OPERATIONS[event_name]
    timestamp = datetime.now(timezone.utc)
    base = [{"Name": "Operation", "Value": operation}]
    by_cloud = [*base, {"Name": "CloudType", "Value": record.cloud_type}]

    def datum(name: str, value: float, dimensions: list[dict[str, str]], unit: str = "Count") -> dict[str, Any]:
        return {
            "MetricName": f"{prefix}{name}",
            "Value": float(value),
            "Unit": unit,
            "Timestamp": timestamp,
            "Dimensions": [{"Name": "Environment", "Value": environment}, *dimensions],
        }

    data = [
        datum("RunCount", 1, base),
        datum("Duration", record.duration_ms, by_cloud, unit="Milliseconds"),
        datum("Success", 1 if record.success else 0, base),
        datum("Failure", 0 if record.success else 1, base),
    ]
    if event_name == PROVISIONING_METRIC:
        data.append(datum("ByCloudType", 1, by_cloud))
        if record.success and record.resource_count is not None:
            data.append(datum("ResourceCount", record.resource_count, by_cloud))
    if not record.success and record.error_code:
        data.append(datum("FailureByError", 1, [*base, {"Name": "ErrorCode", "Value": record.error_code}]))
    return data


class CloudWatchMetricsSink:
    def __init__(
        self,
        region: str | None = None,
        *,
        namespace: str | None = None,
        environment: str | None = None,
        client: Any | None = None,
    ) -> None:
        settings = get_settings()
        self._region = region or settings.aws_region
        self._namespace = namespace or settings.resolved_metrics_namespace()
        self._environment = environment or settings.environment
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = create_client("cloudwatch", region=self._region)
        return self._client

    async def emit(self, event_name: str, record: OperationMetrics) -> None:
        if event_name not in _OPERATIONS:
            logger.warning("metrics_unknown_event event=%s", event_name)
            return
        data = build_metric_data(event_name, record, environment=self._environment)
        client = self._get_client()
        for offset in range(0, len(data), _MAX_DATUMS):
            batch = data[offset : offset + _MAX_DATUMS]
            try:
                await call_aws(_INTEGRATION, client.put_metric_data, Namespace=self._namespace, MetricData=batch)
            except Exception as exc:  # noqa: BLE001 - metrics must never break callers
                logger.error("metrics_emit_failed namespace=%s error=%s", self._namespace, client_error_message(exc))
        logger.info(
            "operation_metrics_emitted event=%s account_id=%s cloud_type=%s success=%s duration_ms=%.0f",
            event_name,
            record.account_id,
            record.cloud_type,
            record.success,
            record.duration_ms,
        )
