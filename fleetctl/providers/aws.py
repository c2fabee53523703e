"""
AWS adapters: ECS tasks as compute units, an ELBv2 target group as the load
balancer and CloudWatch as metrics backend and utilization source.

Versions are revisions of the configured task definition family. boto3 is
blocking, so every call runs in the default executor.
"""

import asyncio
import functools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from fleetctl.config.base_types import PoolId
from fleetctl.config.system_configs import ProviderConfig
from fleetctl.core.exceptions import ProviderError
from fleetctl.monitoring.resource_metrics import UtilizationReading, UtilizationSample
from fleetctl.utils.logger import get_logger

from .base import (
    AlarmDefinition,
    ComputeProvisioner,
    ComputeUnit,
    LoadBalancer,
    MetricsBackend,
    PoolCounts,
)

logger = get_logger(__name__)

STARTED_BY = "fleetctl"
PENDING_STATUSES = {"PROVISIONING", "PENDING", "ACTIVATING"}
RUN_TASK_MAX_COUNT = 10
DESCRIBE_TASKS_MAX = 100


def _client(config: ProviderConfig, service: str):
    session = boto3.Session(region_name=config.region)
    return session.client(service)


async def _call(operation: str, fn: Callable[..., Any], **kwargs) -> Any:
    """Run a blocking boto3 call off the event loop"""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, functools.partial(fn, **kwargs))
    except (ClientError, BotoCoreError) as e:
        raise ProviderError(operation, str(e)) from e


class EcsProvisioner(ComputeProvisioner):
    """Runs standalone ECS tasks spread over capacity providers"""

    def __init__(self, config: ProviderConfig, ecs_client=None):
        if not config.cluster_name or not config.task_family:
            raise ValueError("ECS provider requires cluster_name and task_family")

        self.config = config
        self.client = ecs_client or _client(config, "ecs")
        self.version = config.initial_version
        self.group = f"fleetctl:{config.service_name or config.task_family}"

        self.capacity_providers = {
            PoolId(pool): name for pool, name in config.capacity_providers.items()
        }
        self._pool_by_provider = {
            name: pool for pool, name in self.capacity_providers.items()
        }
        # task arn -> private IPv4, filled by describe calls
        self.addresses: Dict[str, str] = {}

    def task_definition(self, version: str) -> str:
        return f"{self.config.task_family}:{version}"

    async def describe_tasks(self, task_arns: List[str]) -> List[Dict[str, Any]]:
        tasks = []
        for i in range(0, len(task_arns), DESCRIBE_TASKS_MAX):
            response = await _call(
                "describe_tasks",
                self.client.describe_tasks,
                cluster=self.config.cluster_name,
                tasks=task_arns[i : i + DESCRIBE_TASKS_MAX],
            )
            tasks.extend(response.get("tasks", []))

        for task in tasks:
            address = self._private_ip(task)
            if address:
                self.addresses[task["taskArn"]] = address
        return tasks

    @staticmethod
    def _private_ip(task: Dict[str, Any]) -> Optional[str]:
        for attachment in task.get("attachments", []):
            for detail in attachment.get("details", []):
                if detail.get("name") == "privateIPv4Address":
                    return detail.get("value")
        return None

    async def _task_arns(self) -> List[str]:
        arns = []
        token = None
        while True:
            kwargs = {
                "cluster": self.config.cluster_name,
                "startedBy": STARTED_BY,
                "desiredStatus": "RUNNING",
            }
            if token:
                kwargs["nextToken"] = token
            response = await _call("list_tasks", self.client.list_tasks, **kwargs)
            arns.extend(response.get("taskArns", []))
            token = response.get("nextToken")
            if not token:
                return arns

    def _to_unit(self, task: Dict[str, Any]) -> Optional[ComputeUnit]:
        pool = self._pool_by_provider.get(task.get("capacityProviderName"))
        if pool is None or task.get("group") != self.group:
            return None

        return ComputeUnit(
            unit_id=task["taskArn"],
            version=task["taskDefinitionArn"].rsplit(":", 1)[1],
            pool=pool,
            status="pending" if task.get("lastStatus") in PENDING_STATUSES else "running",
        )

    async def list_units(self) -> List[ComputeUnit]:
        arns = await self._task_arns()
        if not arns:
            return []
        tasks = await self.describe_tasks(arns)
        units = [self._to_unit(task) for task in tasks]
        return [unit for unit in units if unit is not None]

    async def describe_counts(self) -> Dict[PoolId, PoolCounts]:
        units = await self.list_units()
        counts = {}
        for pool in PoolId:
            in_pool = [u for u in units if u.pool == pool]
            counts[pool] = PoolCounts(
                running=sum(1 for u in in_pool if u.status == "running"),
                pending=sum(1 for u in in_pool if u.status == "pending"),
            )
        return counts

    async def _run_tasks(self, pool: PoolId, count: int, version: str) -> List[str]:
        launched = []
        while len(launched) < count:
            batch = min(RUN_TASK_MAX_COUNT, count - len(launched))
            kwargs = {
                "cluster": self.config.cluster_name,
                "taskDefinition": self.task_definition(version),
                "count": batch,
                "startedBy": STARTED_BY,
                "group": self.group,
                "capacityProviderStrategy": [
                    {"capacityProvider": self.capacity_providers[pool], "weight": 1}
                ],
                "networkConfiguration": {
                    "awsvpcConfiguration": {
                        "subnets": self.config.subnet_ids,
                        "securityGroups": self.config.security_group_ids,
                        "assignPublicIp": (
                            "ENABLED" if self.config.assign_public_ip else "DISABLED"
                        ),
                    }
                },
            }
            response = await _call("run_task", self.client.run_task, **kwargs)
            failures = response.get("failures", [])
            if failures:
                reasons = ", ".join(f.get("reason", "unknown") for f in failures)
                raise ProviderError("run_task", f"{pool.value}: {reasons}")

            started = [task["taskArn"] for task in response.get("tasks", [])]
            if not started:
                raise ProviderError("run_task", f"{pool.value}: no tasks started")
            launched.extend(started)

        logger.info(
            "Started tasks", pool=pool.value, count=len(launched), version=version
        )
        return launched

    async def _stop_tasks(self, task_arns: Iterable[str], reason: str) -> None:
        for arn in task_arns:
            await _call(
                "stop_task",
                self.client.stop_task,
                cluster=self.config.cluster_name,
                task=arn,
                reason=reason,
            )
            self.addresses.pop(arn, None)

    async def set_pool_counts(self, counts: Dict[PoolId, int]) -> None:
        units = await self.list_units()
        for pool, target in counts.items():
            current = [u for u in units if u.pool == pool]
            if len(current) < target:
                await self._run_tasks(pool, target - len(current), self.version)
            elif len(current) > target:
                # Pending units are cheapest to drop, then outdated ones
                ordered = sorted(
                    current,
                    key=lambda u: (u.status != "pending", u.version == self.version),
                )
                await self._stop_tasks(
                    [u.unit_id for u in ordered[: len(current) - target]],
                    "fleetctl scale-in",
                )

    async def _check_secrets(self, version: str, secrets: Dict[str, str]) -> None:
        """Secrets must be declared on the revision as valueFrom references.

        ECS resolves them from the secret store when the task starts; the
        controller never sees the values.
        """
        task_definition = self.task_definition(version)
        response = await _call(
            "describe_task_definition",
            self.client.describe_task_definition,
            taskDefinition=task_definition,
        )

        declared: Dict[str, str] = {}
        for container in response["taskDefinition"].get("containerDefinitions", []):
            if self.config.container_name in (None, container.get("name")):
                for secret in container.get("secrets", []):
                    declared[secret["name"]] = secret["valueFrom"]

        mismatched = sorted(
            name for name, ref in secrets.items() if declared.get(name) != ref
        )
        if mismatched:
            raise ProviderError(
                "describe_task_definition",
                f"{task_definition} does not declare secrets: "
                f"{', '.join(mismatched)}",
            )

    async def replace_units(
        self,
        unit_ids: Iterable[str],
        version: str,
        secrets: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        unit_ids = list(unit_ids)
        if secrets:
            await self._check_secrets(version, secrets)
        units = {u.unit_id: u for u in await self.list_units()}

        new_ids = []
        for unit_id in unit_ids:
            old = units.get(unit_id)
            if old is None:
                raise ProviderError("replace_units", f"unknown task {unit_id}")
            new_ids.extend(await self._run_tasks(old.pool, 1, version))
            await self._stop_tasks([unit_id], f"fleetctl replaced by {version}")

        # Resolve addresses so the new tasks can be registered
        await self.describe_tasks(new_ids)
        return new_ids

    async def set_version(self, version: str) -> None:
        self.version = version


class ElbTargetGroup(LoadBalancer):
    """ELBv2 target group with IP targets"""

    def __init__(
        self,
        config: ProviderConfig,
        provisioner: EcsProvisioner,
        elbv2_client=None,
    ):
        if not config.target_group_arn:
            raise ValueError("ELB load balancer requires target_group_arn")

        self.config = config
        self.provisioner = provisioner
        self.client = elbv2_client or _client(config, "elbv2")

    async def _targets(self, unit_ids: Iterable[str]) -> List[Dict[str, Any]]:
        unit_ids = list(unit_ids)
        unknown = [u for u in unit_ids if u not in self.provisioner.addresses]
        if unknown:
            await self.provisioner.describe_tasks(unknown)

        return [
            {"Id": self.provisioner.addresses[u], "Port": self.config.container_port}
            for u in unit_ids
            if u in self.provisioner.addresses
        ]

    async def register(self, unit_ids: Iterable[str]) -> None:
        targets = await self._targets(unit_ids)
        if targets:
            await _call(
                "register_targets",
                self.client.register_targets,
                TargetGroupArn=self.config.target_group_arn,
                Targets=targets,
            )

    async def deregister(self, unit_ids: Iterable[str]) -> None:
        targets = await self._targets(unit_ids)
        if targets:
            await _call(
                "deregister_targets",
                self.client.deregister_targets,
                TargetGroupArn=self.config.target_group_arn,
                Targets=targets,
            )

    async def describe_health(
        self, unit_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, bool]:
        response = await _call(
            "describe_target_health",
            self.client.describe_target_health,
            TargetGroupArn=self.config.target_group_arn,
        )

        by_address = {ip: arn for arn, ip in self.provisioner.addresses.items()}
        wanted = None if unit_ids is None else set(unit_ids)

        results = {}
        for description in response.get("TargetHealthDescriptions", []):
            unit_id = by_address.get(description["Target"]["Id"])
            if unit_id is None or (wanted is not None and unit_id not in wanted):
                continue
            state = description.get("TargetHealth", {}).get("State")
            # initial / draining / unused carry no check result yet
            if state == "healthy":
                results[unit_id] = True
            elif state == "unhealthy":
                results[unit_id] = False
        return results


class CloudWatchMetricsBackend(MetricsBackend):
    """Publishes samples as custom metrics and manages threshold alarms"""

    NAMESPACE = "FleetCtl"
    METRIC_NAMES = {"cpu": "CPUUtilization", "memory": "MemoryUtilization"}

    def __init__(
        self,
        config: ProviderConfig,
        fleet_name: str,
        period: float = 60.0,
        cloudwatch_client=None,
    ):
        self.config = config
        self.fleet_name = fleet_name
        self.period = max(60, int(period))
        self.client = cloudwatch_client or _client(config, "cloudwatch")
        self.alarm_names: List[str] = []

    @property
    def dimensions(self) -> List[Dict[str, str]]:
        return [{"Name": "Fleet", "Value": self.fleet_name}]

    async def publish_sample(self, sample: UtilizationSample) -> None:
        if not sample.has_data:
            return

        timestamp = datetime.fromtimestamp(sample.timestamp, tz=timezone.utc)
        await _call(
            "put_metric_data",
            self.client.put_metric_data,
            Namespace=self.NAMESPACE,
            MetricData=[
                {
                    "MetricName": self.METRIC_NAMES["cpu"],
                    "Dimensions": self.dimensions,
                    "Timestamp": timestamp,
                    "Value": sample.cpu_avg,
                    "Unit": "Percent",
                },
                {
                    "MetricName": self.METRIC_NAMES["memory"],
                    "Dimensions": self.dimensions,
                    "Timestamp": timestamp,
                    "Value": sample.mem_avg,
                    "Unit": "Percent",
                },
            ],
        )

    async def define_alarms(self, alarms: List[AlarmDefinition]) -> None:
        for alarm in alarms:
            await _call(
                "put_metric_alarm",
                self.client.put_metric_alarm,
                AlarmName=alarm.name,
                Namespace=self.NAMESPACE,
                MetricName=self.METRIC_NAMES[alarm.metric],
                Dimensions=self.dimensions,
                Statistic="Average",
                Period=self.period,
                EvaluationPeriods=alarm.evaluation_periods,
                Threshold=alarm.threshold,
                ComparisonOperator=alarm.comparison,
                TreatMissingData="notBreaching",
            )
            if alarm.name not in self.alarm_names:
                self.alarm_names.append(alarm.name)

    async def describe_alarm_states(self) -> Dict[str, str]:
        if not self.alarm_names:
            return {}
        response = await _call(
            "describe_alarms",
            self.client.describe_alarms,
            AlarmNames=self.alarm_names,
        )
        return {
            alarm["AlarmName"]: alarm["StateValue"]
            for alarm in response.get("MetricAlarms", [])
        }


class CloudWatchUtilizationSource:
    """Reads ECS service CPU and memory utilization from CloudWatch"""

    def __init__(
        self,
        config: ProviderConfig,
        lookback: float = 300.0,
        cloudwatch_client=None,
    ):
        if not config.cluster_name or not config.service_name:
            raise ValueError("CloudWatch source requires cluster_name and service_name")

        self.config = config
        self.lookback = lookback
        self.client = cloudwatch_client or _client(config, "cloudwatch")

    async def _latest(self, metric_name: str) -> Optional[float]:
        end = datetime.now(timezone.utc)
        response = await _call(
            "get_metric_statistics",
            self.client.get_metric_statistics,
            Namespace="AWS/ECS",
            MetricName=metric_name,
            Dimensions=[
                {"Name": "ClusterName", "Value": self.config.cluster_name},
                {"Name": "ServiceName", "Value": self.config.service_name},
            ],
            StartTime=end - timedelta(seconds=self.lookback),
            EndTime=end,
            Period=60,
            Statistics=["Average"],
        )
        datapoints = response.get("Datapoints", [])
        if not datapoints:
            return None
        latest = max(datapoints, key=lambda d: d["Timestamp"])
        return float(latest["Average"])

    async def read(self) -> Optional[UtilizationReading]:
        cpu = await self._latest("CPUUtilization")
        memory = await self._latest("MemoryUtilization")
        if cpu is None or memory is None:
            return None
        return UtilizationReading(cpu_percent=cpu, memory_percent=memory)
