from __future__ import annotations

from tenantplane.core.config import get_settings
from tenantplane.core.errors import ProviderConfigError
from tenantplane.providers.metrics.base import MetricsSink
from tenantplane.providers.metrics.cloudwatch import CloudWatchMetricsSink
from tenantplane.providers.metrics.fake import FakeMetricsSink, NullMetricsSink


def get_metrics_sink() -> MetricsSink:
    settings = get_settings()
    if not settings.cloudwatch_metrics_enabled:
        return NullMetricsSink()
    provider = (settings.metrics_provider or "").lower()
    if provider == "cloudwatch":
        return CloudWatchMetricsSink(region=settings.aws_region)
    if provider == "fake":
        return FakeMetricsSink()
    if provider == "none":
        return NullMetricsSink()
    raise ProviderConfigError(f"Unsupported metrics provider: {provider}")
