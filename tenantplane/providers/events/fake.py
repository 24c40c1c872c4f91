from __future__ import annotations

from typing import Any

from tenantplane.core.errors import TransientPublishError


class FakeEventPublisher:
    def __init__(self) -> None:
        # Record events in order so tests can assert exactly-once publication.
        self.events: list[tuple[str, dict[str, Any]]] = []
        # Kinds that should fail to publish, for swallow tests.
        self.fail_kinds: set[str] = set()

    async def publish(self, event_kind: str, payload: dict[str, Any]) -> None:
        if event_kind in self.fail_kinds:
            raise TransientPublishError(f"Injected publish failure for {event_kind}")
        self.events.append((event_kind, dict(payload)))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]

    def of_kind(self, event_kind: str) -> list[dict[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_kind]


class NullEventPublisher:
    async def publish(self, event_kind: str, payload: dict[str, Any]) -> None:
        _ = (event_kind, payload)
