from __future__ import annotations

from tenantplane.core.config import get_settings
from tenantplane.core.errors import ProviderConfigError
from tenantplane.providers.datastore.base import DataStore, DedicatedStoreFactory
from tenantplane.providers.datastore.dynamodb import DataPlaneRoleAssumer, DynamoDbStore, DynamoDbStoreFactory
from tenantplane.providers.datastore.fake import FakeDataStore, FakeStoreFactory


def get_shared_store() -> DataStore:
    settings = get_settings()
    provider = (settings.data_store_provider or "").lower()
    table_name = settings.resolved_shared_table_name()
    if provider == "dynamodb":
        return DynamoDbStore(table_name, region=settings.aws_region)
    if provider == "fake":
        return FakeDataStore(table_name)
    raise ProviderConfigError(f"Unsupported data store provider: {provider}")


def get_dedicated_store_factory() -> DedicatedStoreFactory:
    settings = get_settings()
    provider = (settings.data_store_provider or "").lower()
    if provider == "dynamodb":
        # Dedicated tables may live in tenant-owned AWS accounts reached through STS.
        assumer = (
            DataPlaneRoleAssumer(settings.data_plane_role_arn, region=settings.aws_region)
            if settings.data_plane_role_arn
            else None
        )
        return DynamoDbStoreFactory(region=settings.aws_region, role_assumer=assumer)
    if provider == "fake":
        return FakeStoreFactory()
    raise ProviderConfigError(f"Unsupported data store provider: {provider}")
