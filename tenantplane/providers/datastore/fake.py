from __future__ import annotations

import copy
import re
from typing import Any

from tenantplane.core.errors import DataStoreError
from tenantplane.domain.provisioning import RoutingEntry
from tenantplane.providers.datastore.base import bind_transact_items


_AND = re.compile(r"\s+AND\s+", re.IGNORECASE)
_BEGINS_WITH = re.compile(r"^begins_with\(\s*([#\w]+)\s*,\s*(:\w+)\s*\)$")
_COMPARE = re.compile(r"^([#\w.]+)\s*(=|<>|<=|>=|<|>)\s*(:\w+)$")
_EXISTS = re.compile(r"^(attribute_exists|attribute_not_exists)\(\s*([#\w]+)\s*\)$")
_UPDATE_CLAUSE = re.compile(r"\b(SET|REMOVE)\b", re.IGNORECASE)


def _name(token: str, names: dict[str, str]) -> str:
    return names.get(token, token) if token.startswith("#") else token


def _matches(expression: str | None, item: dict[str, Any] | None, params: dict[str, Any]) -> bool:
    # Evaluate the AND-joined subset of DynamoDB expressions the fake understands.
    if not expression:
        return True
    names = params.get("ExpressionAttributeNames") or {}
    values = params.get("ExpressionAttributeValues") or {}
    current = item or {}
    for clause in _AND.split(expression.strip()):
        clause = clause.strip()
        match = _BEGINS_WITH.match(clause)
        if match:
            value = current.get(_name(match.group(1), names))
            if not isinstance(value, str) or not value.startswith(values[match.group(2)]):
                return False
            continue
        match = _EXISTS.match(clause)
        if match:
            present = _name(match.group(2), names) in current
            if present != (match.group(1) == "attribute_exists"):
                return False
            continue
        match = _COMPARE.match(clause)
        if not match:
            raise DataStoreError(f"Unsupported expression in fake store: {clause}")
        left = current.get(_name(match.group(1), names))
        right = values[match.group(3)]
        operator = match.group(2)
        if operator == "=" and left != right:
            return False
        if operator == "<>" and left == right:
            return False
        if operator in {"<", "<=", ">", ">="}:
            if left is None:
                return False
            if operator == "<" and not left < right:
                return False
            if operator == "<=" and not left <= right:
                return False
            if operator == ">" and not left > right:
                return False
            if operator == ">=" and not left >= right:
                return False
    return True


class FakeDataStore:
    """Dict-backed table keyed on (PK, SK) that answers with DynamoDB-shaped responses."""

    def __init__(self, table_name: str, *, key_attributes: tuple[str, ...] = ("PK", "SK")) -> None:
        self._table_name = table_name
        self._key_attributes = key_attributes
        self.items: dict[tuple[Any, ...], dict[str, Any]] = {}
        # Operation log for routing assertions.
        self.calls: list[str] = []

    @property
    def table_name(self) -> str:
        return self._table_name

    def _key(self, source: dict[str, Any]) -> tuple[Any, ...]:
        try:
            return tuple(source[attribute] for attribute in self._key_attributes)
        except KeyError as exc:
            raise DataStoreError(f"Missing key attribute {exc.args[0]} for {self._table_name}") from exc

    def _check_condition(self, params: dict[str, Any], existing: dict[str, Any] | None) -> None:
        condition = params.get("ConditionExpression")
        if condition and not _matches(condition, existing, params):
            raise DataStoreError(f"ConditionalCheckFailedException on {self._table_name}")

    async def get(self, **params: Any) -> dict[str, Any]:
        self.calls.append("get")
        item = self.items.get(self._key(params["Key"]))
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    async def put(self, **params: Any) -> dict[str, Any]:
        self.calls.append("put")
        item = params["Item"]
        key = self._key(item)
        self._check_condition(params, self.items.get(key))
        self.items[key] = copy.deepcopy(item)
        return {}

    async def update(self, **params: Any) -> dict[str, Any]:
        self.calls.append("update")
        key_values = params["Key"]
        key = self._key(key_values)
        existing = self.items.get(key)
        self._check_condition(params, existing)
        item = copy.deepcopy(existing) if existing is not None else dict(key_values)
        self._apply_update(item, params)
        self.items[key] = item
        if params.get("ReturnValues") == "ALL_NEW":
            return {"Attributes": copy.deepcopy(item)}
        return {}

    def _apply_update(self, item: dict[str, Any], params: dict[str, Any]) -> None:
        names = params.get("ExpressionAttributeNames") or {}
        values = params.get("ExpressionAttributeValues") or {}
        parts = _UPDATE_CLAUSE.split(params.get("UpdateExpression") or "")
        for action, body in zip(parts[1::2], parts[2::2]):
            for assignment in (segment.strip() for segment in body.split(",")):
                if not assignment:
                    continue
                if action.upper() == "SET":
                    target, _, source = (token.strip() for token in assignment.partition("="))
                    item[_name(target, names)] = copy.deepcopy(values[source])
                else:
                    item.pop(_name(assignment, names), None)

    async def delete(self, **params: Any) -> dict[str, Any]:
        self.calls.append("delete")
        key = self._key(params["Key"])
        self._check_condition(params, self.items.get(key))
        removed = self.items.pop(key, None)
        if params.get("ReturnValues") == "ALL_OLD" and removed is not None:
            return {"Attributes": removed}
        return {}

    def _select(self, expression: str | None, params: dict[str, Any]) -> list[dict[str, Any]]:
        selected = [
            copy.deepcopy(item)
            for item in self.items.values()
            if _matches(expression, item, params) and _matches(params.get("FilterExpression"), item, params)
        ]
        return selected

    async def query(self, **params: Any) -> dict[str, Any]:
        self.calls.append("query")
        items = self._select(params.get("KeyConditionExpression"), params)
        sort_attribute = "GSI1SK" if params.get("IndexName") == "GSI1" else self._key_attributes[-1]
        items.sort(key=lambda item: str(item.get(sort_attribute, "")), reverse=params.get("ScanIndexForward") is False)
        limit = params.get("Limit")
        if limit:
            items = items[:limit]
        return {"Items": items, "Count": len(items), "ScannedCount": len(items)}

    async def scan(self, **params: Any) -> dict[str, Any]:
        self.calls.append("scan")
        items = self._select(None, params)
        limit = params.get("Limit")
        if limit:
            items = items[:limit]
        return {"Items": items, "Count": len(items), "ScannedCount": len(self.items)}

    async def batch_write(self, requests: list[dict[str, Any]]) -> dict[str, Any]:
        self.calls.append("batch_write")
        for request in requests:
            if "PutRequest" in request:
                item = request["PutRequest"]["Item"]
                self.items[self._key(item)] = copy.deepcopy(item)
            elif "DeleteRequest" in request:
                self.items.pop(self._key(request["DeleteRequest"]["Key"]), None)
        return {"UnprocessedItems": {}}

    async def transact_write(self, operations: list[dict[str, Any]]) -> dict[str, Any]:
        self.calls.append("transact_write")
        if len(operations) > 100:
            raise DataStoreError("Transactions are limited to 100 operations")
        bound = bind_transact_items(operations, self._table_name)
        # Check every condition before applying anything so the write is all-or-nothing.
        for operation in bound:
            for kind in ("Put", "Update", "Delete", "ConditionCheck"):
                body = operation.get(kind)
                if body is None:
                    continue
                if body["TableName"] != self._table_name:
                    raise DataStoreError(f"Transaction targets foreign table {body['TableName']}")
                key_source = body.get("Item") or body.get("Key")
                self._check_condition(body, self.items.get(self._key(key_source)))
        snapshot = copy.deepcopy(self.items)
        try:
            for operation in bound:
                if "Put" in operation:
                    item = operation["Put"]["Item"]
                    self.items[self._key(item)] = copy.deepcopy(item)
                elif "Update" in operation:
                    body = operation["Update"]
                    key = self._key(body["Key"])
                    item = copy.deepcopy(self.items.get(key) or dict(body["Key"]))
                    self._apply_update(item, body)
                    self.items[key] = item
                elif "Delete" in operation:
                    self.items.pop(self._key(operation["Delete"]["Key"]), None)
        except Exception:
            self.items = snapshot
            raise
        return {}


class FakeStoreFactory:
    def __init__(self) -> None:
        # Stores are keyed by table name so tests can inspect dedicated tables directly.
        self.stores: dict[str, FakeDataStore] = {}
        self.forgotten: list[str] = []

    def store_for(self, table_name: str) -> FakeDataStore:
        return self.stores.setdefault(table_name, FakeDataStore(table_name))

    async def get_store(self, entry: RoutingEntry) -> FakeDataStore:
        return self.store_for(entry.store_name)

    def forget(self, account_id: str) -> None:
        self.forgotten.append(account_id)

    def clear(self) -> None:
        self.forgotten.append("*")
