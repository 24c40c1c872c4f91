from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from boto3.dynamodb.types import TypeSerializer

from tenantplane.core.config import get_settings
from tenantplane.core.errors import DataStoreError, ProviderConfigError
from tenantplane.domain.provisioning import RoutingEntry
from tenantplane.providers.aws import (
    call_aws,
    client_error_code,
    client_error_message,
    create_client,
    create_resource,
    is_auth_error,
)
from tenantplane.providers.datastore.base import bind_transact_items


logger = logging.getLogger(__name__)

_INTEGRATION = "datastore.dynamodb"
_STS_INTEGRATION = "datastore.sts"
# Conditional write rejections are answers from a healthy table.
_EXPECTED_CODES = frozenset({"ConditionalCheckFailedException", "TransactionCanceledException"})
_SERIALIZED_FIELDS = ("Item", "Key", "ExpressionAttributeValues")


class DynamoDbStore:
    def __init__(
        self,
        table_name: str,
        *,
        region: str | None = None,
        credentials: dict[str, str] | None = None,
        resource: Any | None = None,
    ) -> None:
        if not table_name:
            raise ProviderConfigError("DynamoDB table name is required")
        self._table_name = table_name
        self._region = region
        self._credentials = credentials or {}
        self._resource = resource
        self._table: Any | None = None
        self._serializer = TypeSerializer()

    @property
    def table_name(self) -> str:
        return self._table_name

    def _get_resource(self) -> Any:
        if self._resource is None:
            self._resource = create_resource("dynamodb", region=self._region, **self._credentials)
        return self._resource

    def _get_table(self) -> Any:
        if self._table is None:
            self._table = self._get_resource().Table(self._table_name)
        return self._table

    async def _call(self, operation: str, method: Callable[..., Any], **params: Any) -> dict[str, Any]:
        try:
            return await call_aws(_INTEGRATION, method, expected_errors=_EXPECTED_CODES, **params)
        except Exception as exc:
            if is_auth_error(exc):
                raise DataStoreError(f"AWS credentials missing or denied for table {self._table_name}.") from exc
            code = client_error_code(exc) or exc.__class__.__name__
            raise DataStoreError(
                f"DynamoDB {operation} on {self._table_name} failed ({code}): {client_error_message(exc)}"
            ) from exc

    async def get(self, **params: Any) -> dict[str, Any]:
        return await self._call("get", self._get_table().get_item, **params)

    async def put(self, **params: Any) -> dict[str, Any]:
        return await self._call("put", self._get_table().put_item, **params)

    async def update(self, **params: Any) -> dict[str, Any]:
        return await self._call("update", self._get_table().update_item, **params)

    async def delete(self, **params: Any) -> dict[str, Any]:
        return await self._call("delete", self._get_table().delete_item, **params)

    async def query(self, **params: Any) -> dict[str, Any]:
        return await self._call("query", self._get_table().query, **params)

    async def scan(self, **params: Any) -> dict[str, Any]:
        return await self._call("scan", self._get_table().scan, **params)

    async def batch_write(self, requests: list[dict[str, Any]]) -> dict[str, Any]:
        resource = self._get_resource()
        return await self._call(
            "batch_write",
            resource.batch_write_item,
            RequestItems={self._table_name: requests},
        )

    async def transact_write(self, operations: list[dict[str, Any]]) -> dict[str, Any]:
        # The low-level client needs typed attribute values; the table resource does not expose transactions.
        client = self._get_resource().meta.client
        items = [self._serialize_operation(item) for item in bind_transact_items(operations, self._table_name)]
        return await self._call("transact_write", client.transact_write_items, TransactItems=items)

    def _serialize_operation(self, operation: dict[str, Any]) -> dict[str, Any]:
        serialized: dict[str, Any] = {}
        for kind, body in operation.items():
            body = dict(body)
            for field_name in _SERIALIZED_FIELDS:
                if field_name in body:
                    body[field_name] = {
                        key: self._serializer.serialize(value) for key, value in body[field_name].items()
                    }
            serialized[kind] = body
        return serialized


@dataclass(frozen=True)
class AssumedCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime

    def as_client_kwargs(self) -> dict[str, str]:
        return {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "aws_session_token": self.session_token,
        }


class DataPlaneRoleAssumer:
    """Assume the data-plane role per account and reuse sessions until close to expiry."""

    def __init__(
        self,
        role_arn: str,
        *,
        region: str | None = None,
        duration_s: int | None = None,
        refresh_buffer_s: int | None = None,
        client: Any | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        if not role_arn:
            raise ProviderConfigError("DATA_PLANE_ROLE_ARN is not configured")
        self._role_arn = role_arn
        self._region = region or settings.aws_region
        self._duration_s = duration_s or settings.data_plane_session_duration_s
        self._refresh_buffer = timedelta(seconds=refresh_buffer_s or settings.data_plane_refresh_buffer_s)
        self._client = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: dict[str, AssumedCredentials] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = create_client("sts", region=self._region)
        return self._client

    def refresh_deadline(self, credentials: AssumedCredentials) -> datetime:
        return credentials.expiration - self._refresh_buffer

    def _fresh(self, credentials: AssumedCredentials) -> bool:
        return self._clock() < self.refresh_deadline(credentials)

    async def credentials_for(self, account_id: str) -> AssumedCredentials:
        cached = self._cache.get(account_id)
        if cached is not None and self._fresh(cached):
            return cached
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            cached = self._cache.get(account_id)
            if cached is not None and self._fresh(cached):
                return cached
            client = self._get_client()
            session_name = f"router-{account_id}-{math.floor(self._clock().timestamp())}"[:64]
            try:
                response = await call_aws(
                    _STS_INTEGRATION,
                    client.assume_role,
                    RoleArn=self._role_arn,
                    RoleSessionName=session_name,
                    DurationSeconds=self._duration_s,
                    Tags=[
                        {"Key": "AccountId", "Value": account_id},
                        {"Key": "Service", "Value": "TenantRouter"},
                    ],
                )
            except Exception as exc:
                raise DataStoreError(
                    f"Failed to assume role {self._role_arn} for account {account_id}: {client_error_message(exc)}"
                ) from exc
            raw = response.get("Credentials") or {}
            if not raw.get("AccessKeyId"):
                raise DataStoreError(f"Failed to assume role {self._role_arn} for account {account_id}")
            expiration = raw.get("Expiration")
            if not isinstance(expiration, datetime):
                expiration = self._clock() + timedelta(seconds=self._duration_s)
            credentials = AssumedCredentials(
                access_key_id=raw["AccessKeyId"],
                secret_access_key=raw["SecretAccessKey"],
                session_token=raw["SessionToken"],
                expiration=expiration,
            )
            self._cache[account_id] = credentials
            logger.debug("data_plane_role_assumed account_id=%s expires_at=%s", account_id, expiration.isoformat())
            return credentials

    def forget(self, account_id: str) -> None:
        self._cache.pop(account_id, None)

    def clear(self) -> None:
        self._cache.clear()


class DynamoDbStoreFactory:
    """Build dedicated-table stores, optionally through cross-account credentials."""

    def __init__(
        self,
        *,
        region: str | None = None,
        role_assumer: DataPlaneRoleAssumer | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._region = region or get_settings().aws_region
        self._role_assumer = role_assumer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stores: dict[str, tuple[DynamoDbStore, datetime | None]] = {}

    async def get_store(self, entry: RoutingEntry) -> DynamoDbStore:
        cached = self._stores.get(entry.account_id)
        if cached is not None:
            store, expires_at = cached
            if store.table_name == entry.store_name and (expires_at is None or self._clock() < expires_at):
                return store
        if self._role_assumer is None:
            store = DynamoDbStore(entry.store_name, region=self._region)
            self._stores[entry.account_id] = (store, None)
            return store
        credentials = await self._role_assumer.credentials_for(entry.account_id)
        store = DynamoDbStore(entry.store_name, region=self._region, credentials=credentials.as_client_kwargs())
        self._stores[entry.account_id] = (store, self._role_assumer.refresh_deadline(credentials))
        return store

    def forget(self, account_id: str) -> None:
        self._stores.pop(account_id, None)
        if self._role_assumer is not None:
            self._role_assumer.forget(account_id)

    def clear(self) -> None:
        self._stores.clear()
        if self._role_assumer is not None:
            self._role_assumer.clear()
