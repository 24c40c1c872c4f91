from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

from tenantplane.core.errors import StackOperationError, StackTimeoutError


logger = logging.getLogger(__name__)

ACTIVE_STACK_STATUSES = frozenset({"CREATE_COMPLETE", "UPDATE_COMPLETE", "UPDATE_ROLLBACK_COMPLETE"})
# Terminal states a create can end in without producing a usable stack.
CREATE_FAILURE_STATUSES = frozenset(
    {
        "CREATE_FAILED",
        "ROLLBACK_COMPLETE",
        "ROLLBACK_FAILED",
        "DELETE_IN_PROGRESS",
        "DELETE_COMPLETE",
        "DELETE_FAILED",
    }
)


@dataclass(frozen=True)
class StackDescription:
    name: str
    status: str
    stack_id: str | None = None
    status_reason: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StackResource:
    logical_id: str
    resource_type: str
    status: str
    physical_id: str | None = None


class StackOrchestrator(Protocol):
    async def ensure_template(self, template_body: str) -> str:
        ...

    async def create_stack(
        self,
        name: str,
        template_ref: str,
        parameters: dict[str, str],
        capabilities: list[str],
        tags: dict[str, str],
    ) -> str:
        ...

    async def describe_stack(self, name: str) -> StackDescription | None:
        ...

    async def describe_stack_resources(self, name: str) -> list[StackResource]:
        ...

    async def delete_stack(self, name: str) -> None:
        ...

    async def wait_until_create_complete(self, name: str, max_wait_s: float) -> StackDescription:
        ...

    async def wait_until_delete_complete(self, name: str, max_wait_s: float) -> None:
        ...


async def poll_stack(
    describe: Callable[[str], Awaitable[StackDescription | None]],
    name: str,
    *,
    done: Callable[[StackDescription | None], bool],
    failed: Callable[[StackDescription | None], bool],
    max_wait_s: float,
    poll_interval_s: float,
    time_source: Callable[[], float] = time.monotonic,
) -> StackDescription | None:
    """Poll ``describe`` until ``done`` or ``failed`` holds, bounded by ``max_wait_s``.

    A stack that never reaches a terminal state raises ``StackTimeoutError``
    instead of blocking the caller forever.
    """
    deadline = time_source() + max_wait_s
    last_status: str | None = None
    while True:
        description = await describe(name)
        last_status = description.status if description else None
        if done(description):
            return description
        if failed(description):
            reason = description.status_reason if description else None
            raise StackOperationError(
                f"Stack {name} ended in {last_status or 'MISSING'}"
                + (f": {reason}" if reason else "")
            )
        remaining = deadline - time_source()
        if remaining <= 0:
            logger.warning("stack_wait_timeout name=%s last_status=%s max_wait_s=%s", name, last_status, max_wait_s)
            raise StackTimeoutError(
                f"Stack {name} did not finish within {max_wait_s:g}s (last status {last_status or 'MISSING'})"
            )
        await asyncio.sleep(min(poll_interval_s, remaining))


async def wait_for_create(
    describe: Callable[[str], Awaitable[StackDescription | None]],
    name: str,
    *,
    max_wait_s: float,
    poll_interval_s: float,
) -> StackDescription:
    description = await poll_stack(
        describe,
        name,
        done=lambda desc: desc is not None and desc.status == "CREATE_COMPLETE",
        failed=lambda desc: desc is None or desc.status in CREATE_FAILURE_STATUSES,
        max_wait_s=max_wait_s,
        poll_interval_s=poll_interval_s,
    )
    if description is None:
        raise StackOperationError(f"Stack {name} vanished before reaching CREATE_COMPLETE")
    return description


async def wait_for_delete(
    describe: Callable[[str], Awaitable[StackDescription | None]],
    name: str,
    *,
    max_wait_s: float,
    poll_interval_s: float,
) -> None:
    # A stack that can no longer be described has finished deleting.
    await poll_stack(
        describe,
        name,
        done=lambda desc: desc is None or desc.status == "DELETE_COMPLETE",
        failed=lambda desc: desc is not None and desc.status == "DELETE_FAILED",
        max_wait_s=max_wait_s,
        poll_interval_s=poll_interval_s,
    )
