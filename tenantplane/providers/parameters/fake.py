from __future__ import annotations

from tenantplane.core.errors import ParameterStoreError


class FakeParameterStore:
    def __init__(self, values: dict[str, str] | None = None) -> None:
        # In-memory map keeps provisioning tests deterministic without SSM.
        self.values: dict[str, str] = dict(values or {})
        self.writes: list[tuple[str, str]] = []
        # Names whose next write should fail, for failure-path tests.
        self.fail_on_put: set[str] = set()

    async def put(self, name: str, value: str, *, overwrite: bool = True) -> None:
        if name in self.fail_on_put:
            raise ParameterStoreError(f"Injected failure writing {name}")
        if not overwrite and name in self.values:
            raise ParameterStoreError(f"Parameter already exists: {name}")
        self.values[name] = value
        self.writes.append((name, value))

    async def get(self, name: str) -> str | None:
        return self.values.get(name)

    async def delete_many(self, names: list[str]) -> None:
        for name in names:
            self.values.pop(name, None)

    def names_with_prefix(self, prefix: str) -> list[str]:
        return sorted(name for name in self.values if name.startswith(prefix))
