from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from botocore.exceptions import ClientError

from tenantplane.core.errors import ParameterStoreError, TransientPublishError
from tenantplane.domain.provisioning import RoutingEntry
from tenantplane.providers.datastore.dynamodb import DataPlaneRoleAssumer, DynamoDbStore, DynamoDbStoreFactory
from tenantplane.providers.events.base import PROVISIONING_FAILED, PROVISIONING_STARTED, PROVISIONING_SUCCEEDED
from tenantplane.providers.events.eventbridge import EventBridgePublisher
from tenantplane.providers.identity.cognito import CognitoIdentityProvider
from tenantplane.providers.metrics.base import DEPROVISIONING_METRIC, PROVISIONING_METRIC, OperationMetrics
from tenantplane.providers.metrics.cloudwatch import CloudWatchMetricsSink, build_metric_data
from tenantplane.providers.parameters.ssm import SsmParameterStore
from tenantplane.providers.stacks.cloudformation import CloudFormationOrchestrator


def _client_error(code: str, message: str = "", status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message or code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


class _Recorder:
    """Sync stub whose methods record requests and answer from a script."""

    def __init__(self, **answers: Any) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._answers = answers

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        def method(**request: Any) -> Any:
            self.calls.append((name, request))
            answer = self._answers.get(name, {})
            if isinstance(answer, Exception):
                raise answer
            return answer(**request) if callable(answer) else answer

        return method

    def requests(self, name: str) -> list[dict[str, Any]]:
        return [request for called, request in self.calls if called == name]


@pytest.mark.asyncio
async def test_ssm_store_reads_writes_and_deletes_in_batches() -> None:
    def get_parameter(**request: Any) -> dict[str, Any]:
        if request["Name"].endswith("missing"):
            raise _client_error("ParameterNotFound")
        return {"Parameter": {"Value": "active"}}

    client = _Recorder(
        get_parameter=get_parameter,
        delete_parameters={"DeletedParameters": [], "InvalidParameters": []},
    )
    store = SsmParameterStore(region="us-east-1", client=client)

    await store.put("/accounts/a/provisioning-status", "active")
    assert await store.get("/accounts/a/provisioning-status") == "active"
    assert await store.get("/accounts/a/missing") is None
    await store.delete_many([f"/accounts/a/key-{index}" for index in range(12)])

    put = client.requests("put_parameter")[0]
    assert put["Type"] == "String" and put["Overwrite"] is True
    assert [len(request["Names"]) for request in client.requests("delete_parameters")] == [10, 2]


@pytest.mark.asyncio
async def test_ssm_store_maps_errors() -> None:
    client = _Recorder(put_parameter=_client_error("AccessDeniedException", status=403))
    store = SsmParameterStore(region="us-east-1", client=client)

    with pytest.raises(ParameterStoreError, match="credentials"):
        await store.put("/accounts/a/cloud-type", "public")


@pytest.mark.asyncio
async def test_eventbridge_publishes_and_fans_out_to_sns() -> None:
    events = _Recorder(put_events={"FailedEntryCount": 0, "Entries": [{"EventId": "1"}]})
    sns = _Recorder(publish={"MessageId": "m1"})
    publisher = EventBridgePublisher(
        "us-east-1",
        bus_name="bus",
        source="com.test",
        success_topic_arn="arn:sns:success",
        failure_topic_arn="arn:sns:failure",
        events_client=events,
        sns_client=sns,
    )
    payload = {"account_id": "acc-1", "cloud_type": "public", "status": "success"}

    await publisher.publish(PROVISIONING_STARTED, payload)
    await publisher.publish(PROVISIONING_SUCCEEDED, payload)
    await publisher.publish(PROVISIONING_FAILED, {**payload, "status": "failed"})

    entries = [request["Entries"][0] for request in events.requests("put_events")]
    assert [entry["DetailType"] for entry in entries] == [
        "Account Provisioning Started",
        "Account Provisioning Completed",
        "Account Provisioning Failed",
    ]
    assert entries[0]["EventBusName"] == "bus"
    assert json.loads(entries[0]["Detail"])["account_id"] == "acc-1"
    assert [request["TopicArn"] for request in sns.requests("publish")] == ["arn:sns:success", "arn:sns:failure"]


@pytest.mark.asyncio
async def test_eventbridge_failed_entry_raises_transient_error() -> None:
    events = _Recorder(
        put_events={"FailedEntryCount": 1, "Entries": [{"ErrorCode": "InternalFailure", "ErrorMessage": "boom"}]}
    )
    publisher = EventBridgePublisher("us-east-1", bus_name="bus", events_client=events, sns_client=_Recorder())

    with pytest.raises(TransientPublishError, match="InternalFailure"):
        await publisher.publish(PROVISIONING_STARTED, {"account_id": "acc-1"})


def test_build_metric_data_for_success_and_failure() -> None:
    success = build_metric_data(
        PROVISIONING_METRIC,
        OperationMetrics(account_id="a", cloud_type="private", success=True, duration_ms=1200, resource_count=4),
        environment="prod",
    )
    names = [datum["MetricName"] for datum in success]
    assert names == [
        "ProvisioningRunCount",
        "ProvisioningDuration",
        "ProvisioningSuccess",
        "ProvisioningFailure",
        "ProvisioningByCloudType",
        "ProvisioningResourceCount",
    ]
    assert all(datum["Dimensions"][0] == {"Name": "Environment", "Value": "prod"} for datum in success)
    assert success[1]["Unit"] == "Milliseconds"
    assert success[3]["Value"] == 0.0

    failure = build_metric_data(
        DEPROVISIONING_METRIC,
        OperationMetrics(account_id="a", cloud_type="public", success=False, duration_ms=10, error_code="Boom"),
        environment="prod",
    )
    assert [datum["MetricName"] for datum in failure] == [
        "DeprovisioningRunCount",
        "DeprovisioningDuration",
        "DeprovisioningSuccess",
        "DeprovisioningFailure",
        "DeprovisioningFailureByError",
    ]
    assert {"Name": "ErrorCode", "Value": "Boom"} in failure[-1]["Dimensions"]


@pytest.mark.asyncio
async def test_cloudwatch_sink_swallows_failures() -> None:
    client = _Recorder(put_metric_data=_client_error("InvalidParameterValue"))
    sink = CloudWatchMetricsSink("us-east-1", namespace="ns", environment="dev", client=client)

    await sink.emit(
        PROVISIONING_METRIC,
        OperationMetrics(account_id="a", cloud_type="public", success=True, duration_ms=5, resource_count=1),
    )

    request = client.requests("put_metric_data")[0]
    assert request["Namespace"] == "ns"
    assert len(request["MetricData"]) == 6


@pytest.mark.asyncio
async def test_cloudformation_uploads_missing_template_once() -> None:
    s3 = _Recorder(head_object=_client_error("404", status=404), put_object={})
    orchestrator = CloudFormationOrchestrator(
        "us-east-1",
        template_bucket="bucket",
        template_key="dev/template.yaml",
        cfn_client=_Recorder(),
        s3_client=s3,
    )

    url = await orchestrator.ensure_template("Resources: {}")
    again = await orchestrator.ensure_template("Resources: {}")

    assert url == again == "https://bucket.s3.us-east-1.amazonaws.com/dev/template.yaml"
    assert len(s3.requests("put_object")) == 1
    assert len(s3.requests("head_object")) == 1


@pytest.mark.asyncio
async def test_cloudformation_describe_maps_outputs_and_missing_stacks() -> None:
    def describe(**request: Any) -> dict[str, Any]:
        if request["StackName"] == "gone":
            raise _client_error("ValidationError", "Stack with id gone does not exist")
        return {
            "Stacks": [
                {
                    "StackName": request["StackName"],
                    "StackId": "arn:stack/1",
                    "StackStatus": "CREATE_COMPLETE",
                    "Outputs": [{"OutputKey": "TableName", "OutputValue": "tbl"}],
                }
            ]
        }

    cfn = _Recorder(
        describe_stacks=describe,
        create_stack={"StackId": "arn:stack/1"},
    )
    orchestrator = CloudFormationOrchestrator("us-east-1", template_bucket="b", cfn_client=cfn, s3_client=_Recorder())

    stack_id = await orchestrator.create_stack("live", "https://t", {"AccountId": "a"}, ["CAPABILITY_IAM"], {"K": "V"})
    description = await orchestrator.wait_until_create_complete("live", max_wait_s=1)

    assert stack_id == "arn:stack/1"
    assert description.outputs == {"TableName": "tbl"}
    assert await orchestrator.describe_stack("gone") is None
    create = cfn.requests("create_stack")[0]
    assert create["OnFailure"] == "ROLLBACK"
    assert create["Parameters"] == [{"ParameterKey": "AccountId", "ParameterValue": "a"}]
    assert create["Tags"] == [{"Key": "K", "Value": "V"}]


@pytest.mark.asyncio
async def test_cognito_creates_missing_group_and_user() -> None:
    client = _Recorder(
        get_group=_client_error("ResourceNotFoundException"),
        admin_get_user=_client_error("UserNotFoundException"),
        admin_create_user={"User": {"Username": "u", "Attributes": [{"Name": "sub", "Value": "sub-1"}]}},
    )
    identity = CognitoIdentityProvider("pool", region="us-east-1", client=client)

    assert await identity.ensure_group("Admins", "Platform admins") is True
    assert await identity.ensure_user("admin@example.com", {"given_name": "A"}) == ("sub-1", True)
    assert await identity.add_user_to_group("admin@example.com", "Admins") is True
    assert client.requests("create_group")[0]["Description"] == "Platform admins"


@pytest.mark.asyncio
async def test_cognito_updates_existing_user() -> None:
    client = _Recorder(
        get_group={"Group": {"GroupName": "Admins"}},
        admin_get_user={"Username": "u", "UserAttributes": [{"Name": "sub", "Value": "sub-2"}]},
    )
    identity = CognitoIdentityProvider("pool", region="us-east-1", client=client)

    assert await identity.ensure_group("Admins") is False
    assert await identity.ensure_user("admin@example.com", {"given_name": "A"}) == ("sub-2", False)
    assert client.requests("admin_update_user_attributes")
    assert not client.requests("admin_create_user")


class _FakeTable:
    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []

    def put_item(self, **request: Any) -> dict[str, Any]:
        self.requests.append(request)
        return {}


class _FakeResource:
    def __init__(self) -> None:
        self.table = _FakeTable()
        self.meta = type("Meta", (), {"client": _Recorder(transact_write_items={})})()

    def Table(self, name: str) -> _FakeTable:
        return self.table


@pytest.mark.asyncio
async def test_dynamodb_store_serializes_transactions() -> None:
    resource = _FakeResource()
    store = DynamoDbStore("tenant-table", region="us-east-1", resource=resource)

    await store.put(Item={"PK": "A", "SK": "B"})
    await store.transact_write([{"Put": {"Item": {"PK": "A", "SK": "C", "count": 2}}}])

    assert resource.table.requests == [{"Item": {"PK": "A", "SK": "B"}}]
    transact = resource.meta.client.requests("transact_write_items")[0]["TransactItems"][0]["Put"]
    assert transact["TableName"] == "tenant-table"
    assert transact["Item"]["PK"] == {"S": "A"}
    assert transact["Item"]["count"] == {"N": "2"}


@pytest.mark.asyncio
async def test_role_assumer_caches_until_refresh_deadline() -> None:
    now = {"t": datetime(2024, 1, 1, tzinfo=timezone.utc)}
    expiration = now["t"] + timedelta(hours=1)
    sts = _Recorder(
        assume_role={
            "Credentials": {
                "AccessKeyId": "AKIA",
                "SecretAccessKey": "secret",
                "SessionToken": "token",
                "Expiration": expiration,
            }
        }
    )
    assumer = DataPlaneRoleAssumer(
        "arn:aws:iam::1:role/data",
        region="us-east-1",
        duration_s=3600,
        refresh_buffer_s=300,
        client=sts,
        clock=lambda: now["t"],
    )
    factory = DynamoDbStoreFactory(region="us-east-1", role_assumer=assumer, clock=lambda: now["t"])
    entry = RoutingEntry(account_id="acc-1", is_private=True, store_name="tbl")

    first = await factory.get_store(entry)
    second = await factory.get_store(entry)
    assert first is second
    assert len(sts.requests("assume_role")) == 1
    assert sts.requests("assume_role")[0]["Tags"][0] == {"Key": "AccountId", "Value": "acc-1"}

    now["t"] = expiration - timedelta(seconds=299)
    third = await factory.get_store(entry)
    assert third is not first
    assert len(sts.requests("assume_role")) == 2

    factory.forget("acc-1")
    await factory.get_store(entry)
    assert len(sts.requests("assume_role")) == 3
