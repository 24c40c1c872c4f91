from __future__ import annotations

from tenantplane.core.config import get_settings
from tenantplane.core.errors import ProviderConfigError
from tenantplane.providers.stacks.base import StackOrchestrator
from tenantplane.providers.stacks.cloudformation import CloudFormationOrchestrator
from tenantplane.providers.stacks.fake import FakeStackOrchestrator


def get_stack_orchestrator() -> StackOrchestrator:
    settings = get_settings()
    provider = (settings.stack_provider or "").lower()
    if provider == "cloudformation":
        return CloudFormationOrchestrator(region=settings.aws_region)
    if provider == "fake":
        return FakeStackOrchestrator(poll_interval_s=min(settings.stack_poll_interval_s, 0.05))
    raise ProviderConfigError(f"Unsupported stack provider: {provider}")
