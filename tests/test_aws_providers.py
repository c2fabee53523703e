"""ECS, ELBv2 and CloudWatch adapters against mocked boto3 clients"""

import itertools
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from fleetctl.config import PoolId
from fleetctl.config.system_configs import ProviderConfig
from fleetctl.core.exceptions import ProviderError
from fleetctl.monitoring.resource_metrics import UtilizationSample
from fleetctl.providers.aws import (
    CloudWatchMetricsBackend,
    CloudWatchUtilizationSource,
    EcsProvisioner,
    ElbTargetGroup,
)
from fleetctl.providers.base import AlarmDefinition

TASK_DEF_ARN = "arn:aws:ecs:us-east-1:123456789012:task-definition/web:{}"


def task(arn, provider="FARGATE_SPOT", revision="3", status="RUNNING", ip=None):
    described = {
        "taskArn": arn,
        "group": "fleetctl:web",
        "capacityProviderName": provider,
        "taskDefinitionArn": TASK_DEF_ARN.format(revision),
        "lastStatus": status,
        "attachments": [],
    }
    if ip:
        described["attachments"].append(
            {"details": [{"name": "privateIPv4Address", "value": ip}]}
        )
    return described


@pytest.fixture
def provider_config():
    return ProviderConfig(
        kind="aws",
        cluster_name="prod",
        service_name="web",
        task_family="web",
        container_name="app",
        subnet_ids=["subnet-1"],
        security_group_ids=["sg-1"],
        target_group_arn="arn:aws:elasticloadbalancing:tg/web",
        container_port=8080,
        initial_version="3",
    )


@pytest.fixture
def ecs():
    client = MagicMock()
    client.list_tasks.return_value = {"taskArns": ["t-1", "t-2", "t-3"]}
    client.describe_tasks.return_value = {
        "tasks": [
            task("t-1", ip="10.0.0.1"),
            task("t-2", status="PROVISIONING"),
            task("t-3", provider="FARGATE", ip="10.0.0.3"),
        ]
    }
    launched = itertools.count(1)
    client.run_task.side_effect = lambda **kwargs: {
        "tasks": [
            {"taskArn": f"t-new-{next(launched)}"} for _ in range(kwargs["count"])
        ],
        "failures": [],
    }
    client.describe_task_definition.return_value = {
        "taskDefinition": {
            "containerDefinitions": [
                {
                    "name": "app",
                    "secrets": [
                        {"name": "DB_PASSWORD", "valueFrom": "arn:aws:secretsmanager:db"}
                    ],
                }
            ]
        }
    }
    return client


@pytest.fixture
def provisioner(provider_config, ecs):
    return EcsProvisioner(provider_config, ecs_client=ecs)


def test_requires_cluster(provider_config):
    provider_config.cluster_name = None
    with pytest.raises(ValueError):
        EcsProvisioner(provider_config, ecs_client=MagicMock())


@pytest.mark.asyncio
async def test_list_units_maps_tasks(provisioner):
    units = {u.unit_id: u for u in await provisioner.list_units()}

    assert units["t-1"].pool == PoolId.SPOT
    assert units["t-1"].version == "3"
    assert units["t-2"].status == "pending"
    assert units["t-3"].pool == PoolId.ON_DEMAND
    assert provisioner.addresses == {"t-1": "10.0.0.1", "t-3": "10.0.0.3"}


@pytest.mark.asyncio
async def test_foreign_tasks_ignored(provisioner, ecs):
    foreign = task("t-9")
    foreign["group"] = "service:other"
    ecs.list_tasks.return_value = {"taskArns": ["t-9"]}
    ecs.describe_tasks.return_value = {"tasks": [foreign]}

    assert await provisioner.list_units() == []


@pytest.mark.asyncio
async def test_list_tasks_paginates(provisioner, ecs):
    ecs.list_tasks.side_effect = [
        {"taskArns": ["t-1"], "nextToken": "more"},
        {"taskArns": ["t-2", "t-3"]},
    ]

    await provisioner.list_units()

    assert ecs.list_tasks.call_count == 2
    assert ecs.list_tasks.call_args.kwargs["nextToken"] == "more"
    assert ecs.describe_tasks.call_args.kwargs["tasks"] == ["t-1", "t-2", "t-3"]


@pytest.mark.asyncio
async def test_describe_counts(provisioner):
    counts = await provisioner.describe_counts()

    assert counts[PoolId.SPOT].running == 1
    assert counts[PoolId.SPOT].pending == 1
    assert counts[PoolId.ON_DEMAND].running == 1


@pytest.mark.asyncio
async def test_scale_out_runs_tasks_on_pool_provider(provisioner, ecs):
    await provisioner.set_pool_counts({PoolId.SPOT: 2, PoolId.ON_DEMAND: 3})

    assert ecs.run_task.call_count == 1
    kwargs = ecs.run_task.call_args.kwargs
    assert kwargs["count"] == 2
    assert kwargs["taskDefinition"] == "web:3"
    assert kwargs["capacityProviderStrategy"] == [
        {"capacityProvider": "FARGATE", "weight": 1}
    ]
    assert kwargs["networkConfiguration"]["awsvpcConfiguration"]["subnets"] == ["subnet-1"]
    ecs.stop_task.assert_not_called()


@pytest.mark.asyncio
async def test_large_scale_out_is_split_into_run_task_calls(provisioner, ecs):
    await provisioner.set_pool_counts({PoolId.ON_DEMAND: 13})

    assert [c.kwargs["count"] for c in ecs.run_task.call_args_list] == [10, 2]


@pytest.mark.asyncio
async def test_scale_in_stops_pending_first(provisioner, ecs):
    await provisioner.set_pool_counts({PoolId.SPOT: 1})

    ecs.run_task.assert_not_called()
    ecs.stop_task.assert_called_once()
    assert ecs.stop_task.call_args.kwargs["task"] == "t-2"


@pytest.mark.asyncio
async def test_scale_in_stops_outdated_before_current(provisioner, ecs):
    ecs.list_tasks.return_value = {"taskArns": ["t-1", "t-4"]}
    ecs.describe_tasks.return_value = {
        "tasks": [task("t-1", revision="3"), task("t-4", revision="2")]
    }

    await provisioner.set_pool_counts({PoolId.SPOT: 1})

    assert ecs.stop_task.call_args.kwargs["task"] == "t-4"


@pytest.mark.asyncio
async def test_replace_units_uses_new_revision_and_declared_secrets(provisioner, ecs):
    new_ids = await provisioner.replace_units(
        ["t-1"], "4", secrets={"DB_PASSWORD": "arn:aws:secretsmanager:db"}
    )

    assert new_ids == ["t-new-1"]
    ecs.describe_task_definition.assert_called_once_with(taskDefinition="web:4")
    kwargs = ecs.run_task.call_args.kwargs
    assert kwargs["taskDefinition"] == "web:4"
    assert kwargs["capacityProviderStrategy"][0]["capacityProvider"] == "FARGATE_SPOT"
    # ECS injects declared secrets itself; nothing is overridden per task
    assert "overrides" not in kwargs
    assert ecs.stop_task.call_args.kwargs["task"] == "t-1"


@pytest.mark.asyncio
async def test_replace_rejects_undeclared_secret(provisioner, ecs):
    with pytest.raises(ProviderError, match="API_TOKEN"):
        await provisioner.replace_units(
            ["t-1"], "4", secrets={"API_TOKEN": "arn:aws:secretsmanager:token"}
        )

    ecs.run_task.assert_not_called()
    ecs.stop_task.assert_not_called()


@pytest.mark.asyncio
async def test_replace_rejects_secret_with_other_source(provisioner, ecs):
    with pytest.raises(ProviderError, match="DB_PASSWORD"):
        await provisioner.replace_units(
            ["t-1"], "4", secrets={"DB_PASSWORD": "arn:aws:ssm:parameter/db"}
        )


@pytest.mark.asyncio
async def test_replace_unknown_unit(provisioner):
    with pytest.raises(ProviderError, match="unknown task"):
        await provisioner.replace_units(["t-404"], "4")


@pytest.mark.asyncio
async def test_run_task_failures_raise(provisioner, ecs):
    ecs.run_task.side_effect = None
    ecs.run_task.return_value = {
        "tasks": [],
        "failures": [{"reason": "RESOURCE:CAPACITY"}],
    }

    with pytest.raises(ProviderError, match="RESOURCE:CAPACITY"):
        await provisioner.set_pool_counts({PoolId.SPOT: 5})


@pytest.mark.asyncio
async def test_run_task_without_tasks_or_failures_raises(provisioner, ecs):
    ecs.run_task.side_effect = None
    ecs.run_task.return_value = {"tasks": [], "failures": []}

    with pytest.raises(ProviderError, match="no tasks started"):
        await provisioner.set_pool_counts({PoolId.SPOT: 5})

    assert ecs.run_task.call_count == 1


@pytest.mark.asyncio
async def test_client_errors_become_provider_errors(provisioner, ecs):
    ecs.list_tasks.side_effect = ClientError(
        {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "ListTasks"
    )

    with pytest.raises(ProviderError) as excinfo:
        await provisioner.list_units()
    assert excinfo.value.operation == "list_tasks"


@pytest.mark.asyncio
async def test_set_version_changes_launch_revision(provisioner, ecs):
    await provisioner.set_version("7")
    await provisioner.set_pool_counts({PoolId.ON_DEMAND: 2})

    assert ecs.run_task.call_args.kwargs["taskDefinition"] == "web:7"


@pytest.fixture
def elbv2():
    client = MagicMock()
    client.describe_target_health.return_value = {
        "TargetHealthDescriptions": [
            {"Target": {"Id": "10.0.0.1"}, "TargetHealth": {"State": "healthy"}},
            {"Target": {"Id": "10.0.0.3"}, "TargetHealth": {"State": "unhealthy"}},
            {"Target": {"Id": "10.0.0.9"}, "TargetHealth": {"State": "healthy"}},
        ]
    }
    return client


@pytest.mark.asyncio
async def test_target_health_mapping(provider_config, provisioner, elbv2):
    await provisioner.list_units()
    balancer = ElbTargetGroup(provider_config, provisioner, elbv2_client=elbv2)

    assert await balancer.describe_health() == {"t-1": True, "t-3": False}
    assert await balancer.describe_health(["t-3"]) == {"t-3": False}


@pytest.mark.asyncio
async def test_initial_targets_have_no_result(provider_config, provisioner, elbv2):
    await provisioner.list_units()
    elbv2.describe_target_health.return_value = {
        "TargetHealthDescriptions": [
            {"Target": {"Id": "10.0.0.1"}, "TargetHealth": {"State": "initial"}},
        ]
    }
    balancer = ElbTargetGroup(provider_config, provisioner, elbv2_client=elbv2)

    assert await balancer.describe_health() == {}


@pytest.mark.asyncio
async def test_register_resolves_addresses(provider_config, provisioner, ecs, elbv2):
    balancer = ElbTargetGroup(provider_config, provisioner, elbv2_client=elbv2)

    await balancer.register(["t-1"])

    ecs.describe_tasks.assert_called_once()
    elbv2.register_targets.assert_called_once_with(
        TargetGroupArn="arn:aws:elasticloadbalancing:tg/web",
        Targets=[{"Id": "10.0.0.1", "Port": 8080}],
    )


@pytest.mark.asyncio
async def test_deregister(provider_config, provisioner, elbv2):
    await provisioner.list_units()
    balancer = ElbTargetGroup(provider_config, provisioner, elbv2_client=elbv2)

    await balancer.deregister(["t-3"])

    assert elbv2.deregister_targets.call_args.kwargs["Targets"] == [
        {"Id": "10.0.0.3", "Port": 8080}
    ]


@pytest.mark.asyncio
async def test_cloudwatch_publish_and_alarms(provider_config):
    cloudwatch = MagicMock()
    cloudwatch.describe_alarms.return_value = {
        "MetricAlarms": [{"AlarmName": "web-cpu-high", "StateValue": "ALARM"}]
    }
    backend = CloudWatchMetricsBackend(
        provider_config, "web", period=30, cloudwatch_client=cloudwatch
    )

    await backend.publish_sample(UtilizationSample.no_data(0.0))
    cloudwatch.put_metric_data.assert_not_called()

    await backend.publish_sample(
        UtilizationSample(timestamp=0.0, cpu_avg=70.0, cpu_max=80.0, mem_avg=40.0, mem_max=45.0)
    )
    metric_data = cloudwatch.put_metric_data.call_args.kwargs["MetricData"]
    assert [m["Value"] for m in metric_data] == [70.0, 40.0]
    assert metric_data[0]["Dimensions"] == [{"Name": "Fleet", "Value": "web"}]

    await backend.define_alarms(
        [AlarmDefinition(name="web-cpu-high", metric="cpu", threshold=60.0, evaluation_periods=3)]
    )
    alarm = cloudwatch.put_metric_alarm.call_args.kwargs
    assert alarm["MetricName"] == "CPUUtilization"
    assert alarm["Period"] == 60
    assert alarm["EvaluationPeriods"] == 3
    assert alarm["TreatMissingData"] == "notBreaching"

    assert await backend.describe_alarm_states() == {"web-cpu-high": "ALARM"}


@pytest.mark.asyncio
async def test_cloudwatch_source_reads_latest_datapoint(provider_config):
    cloudwatch = MagicMock()
    older = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    newer = datetime(2024, 1, 1, 12, 1, tzinfo=timezone.utc)
    cloudwatch.get_metric_statistics.return_value = {
        "Datapoints": [
            {"Timestamp": newer, "Average": 55.0},
            {"Timestamp": older, "Average": 10.0},
        ]
    }
    source = CloudWatchUtilizationSource(provider_config, cloudwatch_client=cloudwatch)

    reading = await source.read()

    assert reading.cpu_percent == 55.0
    assert reading.memory_percent == 55.0
    dimensions = cloudwatch.get_metric_statistics.call_args.kwargs["Dimensions"]
    assert {"Name": "ServiceName", "Value": "web"} in dimensions


@pytest.mark.asyncio
async def test_cloudwatch_source_without_datapoints(provider_config):
    cloudwatch = MagicMock()
    cloudwatch.get_metric_statistics.return_value = {"Datapoints": []}
    source = CloudWatchUtilizationSource(provider_config, cloudwatch_client=cloudwatch)

    assert await source.read() is None
