from __future__ import annotations

import uuid

from tenantplane.core.errors import IdentityProviderError


class FakeIdentityProvider:
    def __init__(self) -> None:
        self.groups: dict[str, str | None] = {}
        self.users: dict[str, dict[str, str]] = {}
        self.memberships: set[tuple[str, str]] = set()
        # Flip on to exercise the non-fatal identity step.
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise IdentityProviderError("Injected identity provider failure")

    async def ensure_group(self, name: str, description: str | None = None) -> bool:
        self._check()
        if name in self.groups:
            return False
        self.groups[name] = description
        return True

    async def ensure_user(self, email: str, attributes: dict[str, str]) -> tuple[str, bool]:
        self._check()
        existing = self.users.get(email)
        if existing is not None:
            existing.update(attributes)
            return existing["sub"], False
        sub = str(uuid.uuid5(uuid.NAMESPACE_DNS, email))
        self.users[email] = {"sub": sub, "email": email, **attributes}
        return sub, True

    async def add_user_to_group(self, username: str, group: str) -> bool:
        self._check()
        if group not in self.groups:
            raise IdentityProviderError(f"Group {group} does not exist")
        self.memberships.add((username, group))
        return True
