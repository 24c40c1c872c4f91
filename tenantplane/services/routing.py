from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from tenantplane.core.config import get_settings
from tenantplane.core.errors import AccountNotRoutableError
from tenantplane.domain.provisioning import CLOUD_PRIVATE, CLOUD_PUBLIC, STATUS_ACTIVE, RoutingEntry
from tenantplane.providers.datastore.base import DataStore, DedicatedStoreFactory
from tenantplane.services.provisioning.provisioner import AccountProvisioner
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class MultiTenantRouter:
    """Resolve which physical store serves an account and proxy data operations to it.

    Entries are cached per account for ``routing_cache_ttl_s`` and dropped as
    soon as the provisioner reports a routing-fact change. Accounts that are not
    active never fall back to the shared store.
    """

    def __init__(
        self,
        provisioner: AccountProvisioner,
        shared_store: DataStore,
        dedicated_stores: DedicatedStoreFactory,
        *,
        cache_ttl_s: float | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._provisioner = provisioner
        self._shared = shared_store
        self._dedicated = dedicated_stores
        self._ttl_s = cache_ttl_s if cache_ttl_s is not None else get_settings().routing_cache_ttl_s
        self._clock = clock or time.monotonic
        self._cache: dict[str, RoutingEntry] = {}
        # Load coordination exists only while a lookup for the account is in flight.
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: dict[str, int] = {}
        # Bumped on invalidation so an in-flight lookup cannot re-cache stale facts.
        self._generations: dict[str, int] = {}
        provisioner.add_routing_listener(self.invalidate_cache)

    @property
    def shared_store_name(self) -> str:
        return self._shared.table_name

    def _cached(self, account_id: str) -> RoutingEntry | None:
        entry = self._cache.get(account_id)
        if entry is None:
            return None
        if self._clock() - entry.cached_at >= self._ttl_s:
            return None
        return entry

    async def resolve(self, account_id: str) -> RoutingEntry:
        entry = self._cached(account_id)
        if entry is not None:
            increment_counter("routing_cache_hits_total")
            return entry
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        self._pending[account_id] = self._pending.get(account_id, 0) + 1
        self._generations.setdefault(account_id, 0)
        try:
            async with lock:
                # Another caller may have populated the entry while we waited.
                entry = self._cached(account_id)
                if entry is not None:
                    increment_counter("routing_cache_hits_total")
                    return entry
                increment_counter("routing_cache_misses_total")
                generation = self._generations[account_id]
                entry = await self._load(account_id)
                if self._generations[account_id] == generation:
                    self._cache[account_id] = entry
                return entry
        finally:
            self._release(account_id)

    def _release(self, account_id: str) -> None:
        remaining = self._pending[account_id] - 1
        if remaining:
            self._pending[account_id] = remaining
            return
        # Nobody holds or waits on the lock any more.
        del self._pending[account_id]
        self._locks.pop(account_id, None)
        self._generations.pop(account_id, None)

    async def _load(self, account_id: str) -> RoutingEntry:
        status = await self._provisioner.get_provisioning_status(account_id)
        if status is None or status.cloud_type not in {CLOUD_PUBLIC, CLOUD_PRIVATE}:
            raise AccountNotRoutableError(account_id)
        if status.status != STATUS_ACTIVE:
            raise AccountNotRoutableError(account_id, status.status)
        if status.cloud_type == CLOUD_PRIVATE:
            if not status.store_name or status.store_name == self.shared_store_name:
                logger.error("routing_private_without_store account_id=%s", account_id)
                raise AccountNotRoutableError(account_id, "active without dedicated store")
            return RoutingEntry(
                account_id=account_id,
                is_private=True,
                store_name=status.store_name,
                store_arn=status.store_arn,
                cached_at=self._clock(),
            )
        return RoutingEntry(
            account_id=account_id,
            is_private=False,
            store_name=self.shared_store_name,
            cached_at=self._clock(),
        )

    def invalidate_cache(self, account_id: str) -> None:
        if account_id in self._generations:
            self._generations[account_id] += 1
        self._cache.pop(account_id, None)
        self._dedicated.forget(account_id)
        logger.debug("routing_cache_invalidated account_id=%s", account_id)

    def clear_cache(self) -> None:
        for account_id in self._generations:
            self._generations[account_id] += 1
        self._cache.clear()
        self._dedicated.clear()
        logger.info("routing_cache_cleared")

    async def is_private_account(self, account_id: str) -> bool:
        return (await self.resolve(account_id)).is_private

    async def get_cloud_type(self, account_id: str) -> str:
        return (await self.resolve(account_id)).cloud_type

    async def _store_for(self, account_id: str) -> DataStore:
        entry = await self.resolve(account_id)
        if not entry.is_private:
            return self._shared
        return await self._dedicated.get_store(entry)

    async def get(self, account_id: str, **params: Any) -> dict[str, Any]:
        return await (await self._store_for(account_id)).get(**params)

    async def put(self, account_id: str, **params: Any) -> dict[str, Any]:
        return await (await self._store_for(account_id)).put(**params)

    async def update(self, account_id: str, **params: Any) -> dict[str, Any]:
        return await (await self._store_for(account_id)).update(**params)

    async def delete(self, account_id: str, **params: Any) -> dict[str, Any]:
        return await (await self._store_for(account_id)).delete(**params)

    async def query(self, account_id: str, **params: Any) -> dict[str, Any]:
        return await (await self._store_for(account_id)).query(**params)

    async def scan(self, account_id: str, **params: Any) -> dict[str, Any]:
        return await (await self._store_for(account_id)).scan(**params)

    async def batch_write(self, account_id: str, requests: list[dict[str, Any]]) -> dict[str, Any]:
        return await (await self._store_for(account_id)).batch_write(requests)

    async def transact_write(self, account_id: str, operations: list[dict[str, Any]]) -> dict[str, Any]:
        return await (await self._store_for(account_id)).transact_write(operations)

    async def query_by_index(
        self,
        account_id: str,
        index_name: str,
        key_condition_expression: str,
        expression_attribute_values: dict[str, Any],
        expression_attribute_names: dict[str, str] | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        return await self.query(
            account_id,
            **_index_query(
                index_name,
                key_condition_expression,
                expression_attribute_values,
                expression_attribute_names,
                params,
            ),
        )

    # Admin operations always target the shared store with the service's own credentials.

    async def admin_get(self, **params: Any) -> dict[str, Any]:
        return await self._shared.get(**params)

    async def admin_put(self, **params: Any) -> dict[str, Any]:
        return await self._shared.put(**params)

    async def admin_query(self, **params: Any) -> dict[str, Any]:
        return await self._shared.query(**params)

    async def admin_transact_write(self, operations: list[dict[str, Any]]) -> dict[str, Any]:
        return await self._shared.transact_write(operations)

    async def admin_query_by_index(
        self,
        index_name: str,
        key_condition_expression: str,
        expression_attribute_values: dict[str, Any],
        expression_attribute_names: dict[str, str] | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        return await self._shared.query(
            **_index_query(
                index_name,
                key_condition_expression,
                expression_attribute_values,
                expression_attribute_names,
                params,
            )
        )


def _index_query(
    index_name: str,
    key_condition_expression: str,
    expression_attribute_values: dict[str, Any],
    expression_attribute_names: dict[str, str] | None,
    extra: dict[str, Any],
) -> dict[str, Any]:
    request: dict[str, Any] = {
        "IndexName": index_name,
        "KeyConditionExpression": key_condition_expression,
        "ExpressionAttributeValues": expression_attribute_values,
        **extra,
    }
    if expression_attribute_names:
        request["ExpressionAttributeNames"] = expression_attribute_names
    return request
