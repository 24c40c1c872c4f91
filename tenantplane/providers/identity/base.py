from __future__ import annotations

from typing import Protocol


class IdentityProvider(Protocol):
    async def ensure_group(self, name: str, description: str | None = None) -> bool:
        ...

    async def ensure_user(self, email: str, attributes: dict[str, str]) -> tuple[str, bool]:
        ...

    async def add_user_to_group(self, username: str, group: str) -> bool:
        ...
