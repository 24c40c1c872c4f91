from __future__ import annotations

from typing import Any, Protocol

from tenantplane.domain.provisioning import RoutingEntry


class DataStore(Protocol):
    """One physical table; callers pass DynamoDB-style keyword parameters without TableName."""

    @property
    def table_name(self) -> str:
        ...

    async def get(self, **params: Any) -> dict[str, Any]:
        ...

    async def put(self, **params: Any) -> dict[str, Any]:
        ...

    async def update(self, **params: Any) -> dict[str, Any]:
        ...

    async def delete(self, **params: Any) -> dict[str, Any]:
        ...

    async def query(self, **params: Any) -> dict[str, Any]:
        ...

    async def scan(self, **params: Any) -> dict[str, Any]:
        ...

    async def batch_write(self, requests: list[dict[str, Any]]) -> dict[str, Any]:
        ...

    async def transact_write(self, operations: list[dict[str, Any]]) -> dict[str, Any]:
        ...


class DedicatedStoreFactory(Protocol):
    async def get_store(self, entry: RoutingEntry) -> DataStore:
        ...

    def forget(self, account_id: str) -> None:
        ...

    def clear(self) -> None:
        ...


_TRANSACT_KINDS = ("Put", "Update", "Delete", "ConditionCheck")


def bind_transact_items(operations: list[dict[str, Any]], table_name: str) -> list[dict[str, Any]]:
    # Inject the resolved table into every transactional operation.
    bound: list[dict[str, Any]] = []
    for operation in operations:
        item = dict(operation)
        for kind in _TRANSACT_KINDS:
            if kind in item:
                item[kind] = {**item[kind], "TableName": table_name}
        bound.append(item)
    return bound
