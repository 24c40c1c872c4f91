from __future__ import annotations

from tenantplane.core.config import get_settings
from tenantplane.core.errors import ProviderConfigError
from tenantplane.providers.events.base import EventPublisher
from tenantplane.providers.events.eventbridge import EventBridgePublisher
from tenantplane.providers.events.fake import FakeEventPublisher, NullEventPublisher


def get_event_publisher() -> EventPublisher:
    settings = get_settings()
    if not settings.provisioning_events_enabled:
        # Disabled publication still satisfies the publisher contract.
        return NullEventPublisher()
    provider = (settings.events_provider or "").lower()
    if provider == "eventbridge":
        return EventBridgePublisher(region=settings.aws_region)
    if provider == "fake":
        return FakeEventPublisher()
    if provider == "none":
        return NullEventPublisher()
    raise ProviderConfigError(f"Unsupported events provider: {provider}")
