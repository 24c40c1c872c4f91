from __future__ import annotations

import logging
from typing import Any

from tenantplane.core.config import get_settings
from tenantplane.core.errors import StackOperationError
from tenantplane.providers.aws import (
    call_aws,
    client_error_code,
    client_error_message,
    create_client,
    is_auth_error,
)
from tenantplane.providers.stacks.base import (
    StackDescription,
    StackResource,
    wait_for_create,
    wait_for_delete,
)


logger = logging.getLogger(__name__)

_CFN_INTEGRATION = "stacks.cloudformation"
_S3_INTEGRATION = "stacks.s3_templates"


class CloudFormationOrchestrator:
    def __init__(
        self,
        region: str | None = None,
        *,
        template_bucket: str | None = None,
        template_key: str | None = None,
        poll_interval_s: float | None = None,
        cfn_client: Any | None = None,
        s3_client: Any | None = None,
    ) -> None:
        settings = get_settings()
        self._region = region or settings.aws_region
        self._bucket = template_bucket or settings.resolved_template_bucket()
        # Templates are namespaced per environment inside the shared bucket.
        self._key = template_key or f"{settings.environment}/{settings.cfn_template_key}"
        self._poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.stack_poll_interval_s
        self._cfn = cfn_client
        self._s3 = s3_client
        self._template_ensured = False

    def _get_cfn(self) -> Any:
        if self._cfn is None:
            self._cfn = create_client("cloudformation", region=self._region)
        return self._cfn

    def _get_s3(self) -> Any:
        if self._s3 is None:
            self._s3 = create_client("s3", region=self._region)
        return self._s3

    def _template_url(self) -> str:
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{self._key}"

    async def ensure_template(self, template_body: str) -> str:
        # Upload only when the object is absent; an existing template is reused as-is.
        if self._template_ensured:
            return self._template_url()
        s3 = self._get_s3()
        try:
            await call_aws(
                _S3_INTEGRATION,
                s3.head_object,
                expected_errors=frozenset({"404", "NoSuchKey", "NotFound"}),
                Bucket=self._bucket,
                Key=self._key,
            )
        except Exception as exc:
            if client_error_code(exc) not in {"404", "NoSuchKey", "NotFound"}:
                raise self._map_error(exc, "Failed to check stack template") from exc
            logger.info("stack_template_upload bucket=%s key=%s", self._bucket, self._key)
            try:
                await call_aws(
                    _S3_INTEGRATION,
                    s3.put_object,
                    Bucket=self._bucket,
                    Key=self._key,
                    Body=template_body.encode("utf-8"),
                    ContentType="application/x-yaml",
                )
            except Exception as upload_exc:
                raise self._map_error(upload_exc, "Failed to upload stack template") from upload_exc
        self._template_ensured = True
        return self._template_url()

    async def create_stack(
        self,
        name: str,
        template_ref: str,
        parameters: dict[str, str],
        capabilities: list[str],
        tags: dict[str, str],
    ) -> str:
        cfn = self._get_cfn()
        try:
            response = await call_aws(
                _CFN_INTEGRATION,
                cfn.create_stack,
                StackName=name,
                TemplateURL=template_ref,
                Parameters=[
                    {"ParameterKey": key, "ParameterValue": value} for key, value in parameters.items()
                ],
                Capabilities=list(capabilities),
                Tags=[{"Key": key, "Value": value} for key, value in tags.items()],
                OnFailure="ROLLBACK",
            )
        except Exception as exc:
            raise self._map_error(exc, f"Failed to create stack {name}") from exc
        stack_id = response.get("StackId")
        if not stack_id:
            raise StackOperationError(f"Stack {name} was submitted without a stack id")
        return stack_id

    async def describe_stack(self, name: str) -> StackDescription | None:
        cfn = self._get_cfn()
        try:
            response = await call_aws(
                _CFN_INTEGRATION,
                cfn.describe_stacks,
                expected_errors=frozenset({"ValidationError"}),
                StackName=name,
            )
        except Exception as exc:
            # CloudFormation reports unknown stacks as a ValidationError.
            if client_error_code(exc) == "ValidationError" and "does not exist" in client_error_message(exc):
                return None
            raise self._map_error(exc, f"Failed to describe stack {name}") from exc
        stacks = response.get("Stacks") or []
        if not stacks:
            return None
        stack = stacks[0]
        outputs = {
            output["OutputKey"]: output.get("OutputValue", "")
            for output in stack.get("Outputs") or []
            if output.get("OutputKey")
        }
        return StackDescription(
            name=stack.get("StackName", name),
            status=stack.get("StackStatus", "UNKNOWN"),
            stack_id=stack.get("StackId"),
            status_reason=stack.get("StackStatusReason"),
            outputs=outputs,
        )

    async def describe_stack_resources(self, name: str) -> list[StackResource]:
        cfn = self._get_cfn()
        try:
            response = await call_aws(_CFN_INTEGRATION, cfn.describe_stack_resources, StackName=name)
        except Exception as exc:
            raise self._map_error(exc, f"Failed to describe resources for stack {name}") from exc
        return [
            StackResource(
                logical_id=resource.get("LogicalResourceId", ""),
                resource_type=resource.get("ResourceType", ""),
                status=resource.get("ResourceStatus", ""),
                physical_id=resource.get("PhysicalResourceId"),
            )
            for resource in response.get("StackResources") or []
        ]

    async def delete_stack(self, name: str) -> None:
        cfn = self._get_cfn()
        try:
            await call_aws(_CFN_INTEGRATION, cfn.delete_stack, StackName=name)
        except Exception as exc:
            raise self._map_error(exc, f"Failed to delete stack {name}") from exc

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

    def _map_error(self, exc: Exception, message: str) -> StackOperationError:
        if is_auth_error(exc):
            return StackOperationError("AWS credentials missing or denied for CloudFormation.")
        return StackOperationError(f"{message}: {client_error_message(exc)}")
