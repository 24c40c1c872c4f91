from __future__ import annotations

from dataclasses import dataclass, field

from tenantplane.core.errors import StackOperationError
from tenantplane.providers.stacks.base import (
    StackDescription,
    StackResource,
    wait_for_create,
    wait_for_delete,
)


@dataclass
class FakeStack:
    name: str
    stack_id: str
    status: str
    parameters: dict[str, str]
    tags: dict[str, str]
    status_reason: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    resources: list[StackResource] = field(default_factory=list)


class FakeStackOrchestrator:
    """In-memory orchestrator whose stacks settle instantly unless told otherwise."""

    def __init__(self, *, poll_interval_s: float = 0.01, region: str = "us-east-1") -> None:
        self.stacks: dict[str, FakeStack] = {}
        self.templates: list[str] = []
        self.created: list[str] = []
        self.deleted: list[str] = []
        self._poll_interval_s = poll_interval_s
        self._region = region
        # Stacks stay CREATE_IN_PROGRESS forever, for timeout tests.
        self.hang_on_create = False
        # When set, creates roll back with this reason.
        self.fail_on_create: str | None = None
        # Deletes stay DELETE_IN_PROGRESS forever.
        self.hang_on_delete = False

    async def ensure_template(self, template_body: str) -> str:
        if not self.templates:
            self.templates.append(template_body)
        return "https://fake-templates.s3.amazonaws.com/private-account-dynamodb.yaml"

    async def create_stack(
        self,
        name: str,
        template_ref: str,
        parameters: dict[str, str],
        capabilities: list[str],
        tags: dict[str, str],
    ) -> str:
        existing = self.stacks.get(name)
        if existing is not None and existing.status != "DELETE_COMPLETE":
            raise StackOperationError(f"Stack {name} already exists")
        stack_id = f"arn:aws:cloudformation:{self._region}:000000000000:stack/{name}/{len(self.created) + 1}"
        stack = FakeStack(
            name=name,
            stack_id=stack_id,
            status="CREATE_IN_PROGRESS",
            parameters=dict(parameters),
            tags=dict(tags),
        )
        self.stacks[name] = stack
        self.created.append(name)
        if self.hang_on_create:
            return stack_id
        if self.fail_on_create is not None:
            stack.status = "ROLLBACK_COMPLETE"
            stack.status_reason = self.fail_on_create
            return stack_id
        self.complete_stack(name)
        return stack_id

    def complete_stack(self, name: str) -> None:
        # Settle a stack as CREATE_COMPLETE with the outputs the real template exports.
        stack = self.stacks[name]
        params = stack.parameters
        table_name = f"{params.get('ProjectName', 'app')}-{params.get('Environment', 'dev')}-{params.get('AccountId', name)}"
        table_arn = f"arn:aws:dynamodb:{self._region}:000000000000:table/{table_name}"
        stack.status = "CREATE_COMPLETE"
        stack.outputs = {
            "TableName": table_name,
            "TableArn": table_arn,
            "TableStreamArn": f"{table_arn}/stream/2024-01-01T00:00:00.000",
        }
        stack.resources = [
            StackResource("AccountTable", "AWS::DynamoDB::Table", "CREATE_COMPLETE", table_name),
            StackResource("DataPlaneAccessRole", "AWS::IAM::Role", "CREATE_COMPLETE", f"{table_name}-data"),
            StackResource("TableNameParam", "AWS::SSM::Parameter", "CREATE_COMPLETE", "table-name"),
        ]

    async def describe_stack(self, name: str) -> StackDescription | None:
        stack = self.stacks.get(name)
        if stack is None:
            return None
        return StackDescription(
            name=stack.name,
            status=stack.status,
            stack_id=stack.stack_id,
            status_reason=stack.status_reason,
            outputs=dict(stack.outputs),
        )

    async def describe_stack_resources(self, name: str) -> list[StackResource]:
        stack = self.stacks.get(name)
        if stack is None:
            raise StackOperationError(f"Stack {name} does not exist")
        return list(stack.resources)

    async def delete_stack(self, name: str) -> None:
        self.deleted.append(name)
        stack = self.stacks.get(name)
        if stack is None:
            return
        if self.hang_on_delete:
            stack.status = "DELETE_IN_PROGRESS"
            return
        self.stacks.pop(name, None)

    async def wait_until_create_complete(self, name: str, max_wait_s: float) -> StackDescription:
        return await wait_for_create(
            self.describe_stack,
            name,
            max_wait_s=max_wait_s,
            poll_interval_s=self._poll_interval_s,
        )

    async def wait_until_delete_complete(self, name: str, max_wait_s: float) -> None:
        await wait_for_delete(
            self.describe_stack,
            name,
            max_wait_s=max_wait_s,
            poll_interval_s=self._poll_interval_s,
        )
