from __future__ import annotations

from typing import Protocol


class ParameterStore(Protocol):
    async def put(self, name: str, value: str, *, overwrite: bool = True) -> None:
        ...

    async def get(self, name: str) -> str | None:
        ...

    async def delete_many(self, names: list[str]) -> None:
        ...
