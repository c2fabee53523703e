import asyncio
import contextlib
from typing import Iterable

import pytest

from fleetctl.config import (
    Config,
    DeploymentSettings,
    HealthCheckConfig,
    PoolId,
    ScalingConfig,
)
from fleetctl.core.deployment_orchestrator import DeploymentOrchestrator, DeploymentPlan
from fleetctl.core.health_gate import HealthGate
from fleetctl.providers.in_memory import InMemoryFleet, InMemoryMetricsBackend


@contextlib.asynccontextmanager
async def feeding_health(
    fleet: InMemoryFleet,
    gate: HealthGate,
    interval: float = 0.005,
    skip_versions: Iterable[str] = (),
):
    """Poll the fake load balancer into the health gate in the background"""
    skip = set(skip_versions)

    async def feed():
        while True:
            results = await fleet.describe_health()
            gate.record_many(
                {
                    unit_id: passed
                    for unit_id, passed in results.items()
                    if fleet.units[unit_id].version not in skip
                }
            )
            await asyncio.sleep(interval)

    task = asyncio.create_task(feed())
    try:
        yield task
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def health_feeder():
    return feeding_health


@pytest.fixture
def waiter():
    return wait_until


@pytest.fixture
def health_config():
    return HealthCheckConfig(healthy_threshold=1, unhealthy_threshold=1, interval=0.005)


@pytest.fixture
def deployment_settings():
    return DeploymentSettings(
        batch_size=2,
        health_check_grace_period=1.0,
        stabilization_window=0.05,
        deployment_timeout=10.0,
    )


@pytest.fixture
def fleet():
    """Four v1 units: three Spot, one On-Demand"""
    fake = InMemoryFleet(version="v1")
    fake.add_units(PoolId.SPOT, 3)
    fake.add_units(PoolId.ON_DEMAND, 1)
    return fake


@pytest.fixture
def gate(health_config):
    return HealthGate(health_config)


@pytest.fixture
def orchestrator(fleet, gate, deployment_settings):
    return DeploymentOrchestrator(fleet, fleet, gate, deployment_settings)


@pytest.fixture
def plan(deployment_settings):
    return DeploymentPlan.from_settings("v2", deployment_settings)


@pytest.fixture
def scaling_config():
    return ScalingConfig(
        min_count=1,
        max_count=6,
        desired_count=2,
        cpu_scale_target=60.0,
        mem_scale_target=70.0,
        scale_out_cooldown=60,
        scale_in_cooldown=300,
        evaluation_window=180,
        scale_in_window=300,
    )


@pytest.fixture
def config(scaling_config, deployment_settings, health_config):
    cfg = Config(
        fleet_name="test-fleet",
        scaling=scaling_config,
        deployment=deployment_settings,
        health_check=health_config,
    )
    cfg.reconcile.reconcile_interval = 3600.0
    cfg.monitoring.enable_prometheus_export = True
    return cfg


@pytest.fixture
def metrics_backend():
    return InMemoryMetricsBackend()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep host FLEETCTL_* settings and the global config out of tests"""
    import os

    from fleetctl.config import set_config

    for name in list(os.environ):
        if name.startswith("FLEETCTL_"):
            monkeypatch.delenv(name, raising=False)
    set_config(None)
    yield
    set_config(None)
