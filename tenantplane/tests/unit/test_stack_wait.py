from __future__ import annotations

import pytest

from tenantplane.core.errors import StackOperationError
from tenantplane.providers.stacks import base as stacks_base
from tenantplane.providers.stacks.base import StackDescription, wait_for_create


def _describer(*statuses: str | None):
    remaining = list(statuses)

    async def describe(name: str) -> StackDescription | None:
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return None if status is None else StackDescription(name=name, status=status)

    return describe


@pytest.mark.asyncio
async def test_wait_for_create_returns_completed_description() -> None:
    describe = _describer("CREATE_IN_PROGRESS", "CREATE_COMPLETE")
    description = await wait_for_create(describe, "stack-a", max_wait_s=5, poll_interval_s=0.001)
    assert description.status == "CREATE_COMPLETE"


@pytest.mark.asyncio
async def test_wait_for_create_rejects_missing_stack() -> None:
    with pytest.raises(StackOperationError, match="MISSING"):
        await wait_for_create(_describer(None), "stack-b", max_wait_s=5, poll_interval_s=0.001)


@pytest.mark.asyncio
async def test_wait_for_create_raises_when_poll_yields_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    async def empty_poll(*args, **kwargs) -> None:
        return None

    monkeypatch.setattr(stacks_base, "poll_stack", empty_poll)

    with pytest.raises(StackOperationError, match="stack-c"):
        await wait_for_create(_describer("CREATE_COMPLETE"), "stack-c", max_wait_s=5, poll_interval_s=0.001)
