from __future__ import annotations

import logging
from typing import Any

from tenantplane.core.errors import IdentityProviderError, ProviderConfigError
from tenantplane.providers.aws import call_aws, client_error_code, client_error_message, create_client


logger = logging.getLogger(__name__)

_INTEGRATION = "identity.cognito"


def _attribute(attributes: list[dict[str, str]], name: str) -> str | None:
    for attribute in attributes:
        if attribute.get("Name") == name:
            return attribute.get("Value")
    return None


class CognitoIdentityProvider:
    def __init__(self, user_pool_id: str, *, region: str | None = None, client: Any | None = None) -> None:
        if not user_pool_id:
            raise ProviderConfigError("COGNITO_USER_POOL_ID is not configured")
        self._user_pool_id = user_pool_id
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = create_client("cognito-idp", region=self._region)
        return self._client

    async def ensure_group(self, name: str, description: str | None = None) -> bool:
        client = self._get_client()
        try:
            await call_aws(
                _INTEGRATION,
                client.get_group,
                expected_errors=frozenset({"ResourceNotFoundException"}),
                GroupName=name,
                UserPoolId=self._user_pool_id,
            )
            return False
        except Exception as exc:
            if client_error_code(exc) != "ResourceNotFoundException":
                raise IdentityProviderError(f"Failed to read group {name}: {client_error_message(exc)}") from exc
        request: dict[str, Any] = {"GroupName": name, "UserPoolId": self._user_pool_id}
        if description:
            request["Description"] = description
        try:
            await call_aws(_INTEGRATION, client.create_group, **request)
        except Exception as exc:
            raise IdentityProviderError(f"Failed to create group {name}: {client_error_message(exc)}") from exc
        logger.info("identity_group_created group=%s", name)
        return True

    async def ensure_user(self, email: str, attributes: dict[str, str]) -> tuple[str, bool]:
        client = self._get_client()
        user_attributes = [{"Name": key, "Value": value} for key, value in attributes.items()]
        try:
            existing = await call_aws(
                _INTEGRATION,
                client.admin_get_user,
                expected_errors=frozenset({"UserNotFoundException"}),
                UserPoolId=self._user_pool_id,
                Username=email,
            )
        except Exception as exc:
            if client_error_code(exc) != "UserNotFoundException":
                raise IdentityProviderError(f"Failed to read user {email}: {client_error_message(exc)}") from exc
            existing = None

        if existing is not None:
            # Keep custom attributes in sync for an admin that already exists.
            if user_attributes:
                try:
                    await call_aws(
                        _INTEGRATION,
                        client.admin_update_user_attributes,
                        UserPoolId=self._user_pool_id,
                        Username=email,
                        UserAttributes=user_attributes,
                    )
                except Exception as exc:
                    raise IdentityProviderError(
                        f"Failed to update user {email}: {client_error_message(exc)}"
                    ) from exc
            sub = _attribute(existing.get("UserAttributes") or [], "sub") or existing.get("Username", email)
            return sub, False

        try:
            created = await call_aws(
                _INTEGRATION,
                client.admin_create_user,
                UserPoolId=self._user_pool_id,
                Username=email,
                UserAttributes=[
                    {"Name": "email", "Value": email},
                    {"Name": "email_verified", "Value": "true"},
                    *user_attributes,
                ],
                DesiredDeliveryMediums=["EMAIL"],
            )
        except Exception as exc:
            raise IdentityProviderError(f"Failed to create user {email}: {client_error_message(exc)}") from exc
        user = created.get("User") or {}
        sub = _attribute(user.get("Attributes") or [], "sub") or user.get("Username", email)
        logger.info("identity_user_created email=%s", email)
        return sub, True

    async def add_user_to_group(self, username: str, group: str) -> bool:
        client = self._get_client()
        try:
            await call_aws(
                _INTEGRATION,
                client.admin_add_user_to_group,
                UserPoolId=self._user_pool_id,
                Username=username,
                GroupName=group,
            )
        except Exception as exc:
            raise IdentityProviderError(
                f"Failed to add {username} to group {group}: {client_error_message(exc)}"
            ) from exc
        return True
