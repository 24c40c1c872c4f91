from __future__ import annotations

from tenantplane.core.config import get_settings
from tenantplane.core.errors import ProviderConfigError
from tenantplane.providers.parameters.base import ParameterStore
from tenantplane.providers.parameters.fake import FakeParameterStore
from tenantplane.providers.parameters.ssm import SsmParameterStore


def get_parameter_store() -> ParameterStore:
    settings = get_settings()
    provider = (settings.parameter_store_provider or "").lower()
    if provider == "ssm":
        return SsmParameterStore(region=settings.aws_region)
    if provider == "fake":
        return FakeParameterStore()
    raise ProviderConfigError(f"Unsupported parameter store provider: {provider}")
