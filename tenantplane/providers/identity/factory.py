from __future__ import annotations

from tenantplane.core.config import get_settings
from tenantplane.core.errors import ProviderConfigError
from tenantplane.providers.identity.base import IdentityProvider
from tenantplane.providers.identity.cognito import CognitoIdentityProvider
from tenantplane.providers.identity.fake import FakeIdentityProvider


def get_identity_provider() -> IdentityProvider | None:
    settings = get_settings()
    provider = (settings.identity_provider or "none").lower()
    if provider == "none":
        # Bootstrap records the identity step as skipped.
        return None
    if provider == "cognito":
        return CognitoIdentityProvider(settings.cognito_user_pool_id or "", region=settings.aws_region)
    if provider == "fake":
        return FakeIdentityProvider()
    raise ProviderConfigError(f"Unsupported identity provider: {provider}")
