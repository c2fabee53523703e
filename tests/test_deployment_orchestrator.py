import asyncio

import pytest

from fleetctl.config import PoolId
from fleetctl.core.deployment_orchestrator import (
    DeploymentOrchestrator,
    DeploymentPlan,
    DeploymentStatus,
)
from fleetctl.core.exceptions import (
    DeploymentInProgressError,
    InvalidPlanError,
    RollbackFailedError,
)
from fleetctl.providers.in_memory import InMemoryFleet


def statuses(state):
    return [t.to_status for t in state.transitions]


def versions(fleet):
    return sorted(unit.version for unit in fleet.units.values())


class DrainRecordingFleet(InMemoryFleet):
    """Records whether units were still running when taken out of rotation"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.drained = []

    async def deregister(self, unit_ids):
        unit_ids = list(unit_ids)
        self.drained.append({u: u in self.units for u in unit_ids})
        await super().deregister(unit_ids)


@pytest.mark.asyncio
async def test_rolling_deployment_succeeds(fleet, gate, orchestrator, plan, health_feeder):
    async with health_feeder(fleet, gate):
        state = await orchestrator.deploy(plan)

    assert state.status == DeploymentStatus.SUCCEEDED
    assert statuses(state) == [
        DeploymentStatus.ROLLING_OUT,
        DeploymentStatus.OBSERVING,
        DeploymentStatus.SUCCEEDED,
    ]
    assert state.previous_version == "v1"
    assert versions(fleet) == ["v2"] * 4
    assert len(state.batches) == 2
    assert [len(call) for call in fleet.replace_calls] == [2, 2]
    assert fleet.version == "v2"
    assert orchestrator.active is None
    assert orchestrator.history[-1] is state


@pytest.mark.asyncio
async def test_pool_membership_survives_replacement(fleet, gate, orchestrator, plan, health_feeder):
    before = await fleet.describe_counts()
    async with health_feeder(fleet, gate):
        await orchestrator.deploy(plan)

    assert await fleet.describe_counts() == before


@pytest.mark.asyncio
async def test_batch_size_of_whole_fleet_is_single_batch(
    fleet, gate, orchestrator, deployment_settings, health_feeder
):
    plan = DeploymentPlan.from_settings("v2", deployment_settings, batch_size=4)

    async with health_feeder(fleet, gate):
        state = await orchestrator.deploy(plan)

    assert state.status == DeploymentStatus.SUCCEEDED
    assert len(state.batches) == 1
    assert len(fleet.replace_calls) == 1
    assert sorted(fleet.replace_calls[0]) == sorted(state.batches[0].old_unit_ids)


@pytest.mark.asyncio
async def test_batch_size_larger_than_fleet(fleet, gate, orchestrator, deployment_settings, health_feeder):
    plan = DeploymentPlan.from_settings("v2", deployment_settings, batch_size=50)

    async with health_feeder(fleet, gate):
        state = await orchestrator.deploy(plan)

    assert len(state.batches) == 1
    assert versions(fleet) == ["v2"] * 4


@pytest.mark.asyncio
async def test_unhealthy_batch_rolls_back(fleet, gate, orchestrator, plan, health_feeder):
    fleet.unhealthy_versions.add("v2")

    async with health_feeder(fleet, gate):
        state = await orchestrator.deploy(plan)

    assert state.status == DeploymentStatus.ROLLED_BACK
    assert statuses(state) == [
        DeploymentStatus.ROLLING_OUT,
        DeploymentStatus.ROLLING_BACK,
        DeploymentStatus.ROLLED_BACK,
    ]
    assert versions(fleet) == ["v1"] * 4
    assert fleet.version == "v1"
    # Only the first batch was touched
    assert len(state.batches) == 1
    assert state.batches[0].status == "rolled_back"
    assert "unhealthy" in state.error


@pytest.mark.asyncio
async def test_failure_without_rollback_ends_failed(
    fleet, gate, orchestrator, deployment_settings, health_feeder
):
    fleet.unhealthy_versions.add("v2")
    plan = DeploymentPlan.from_settings(
        "v2", deployment_settings, rollback_on_failure=False
    )

    async with health_feeder(fleet, gate):
        state = await orchestrator.deploy(plan)

    assert state.status == DeploymentStatus.FAILED
    assert DeploymentStatus.ROLLING_BACK not in statuses(state)
    assert versions(fleet) == ["v1", "v1", "v2", "v2"]
    assert orchestrator.active is None


@pytest.mark.asyncio
async def test_rollback_gives_up_after_attempt_budget(fleet, gate, orchestrator, plan, health_feeder):
    fleet.unhealthy_versions.add("v2")
    fleet.unlaunchable_versions.add("v1")

    async with health_feeder(fleet, gate):
        with pytest.raises(RollbackFailedError) as exc_info:
            await orchestrator.deploy(plan)

    state = orchestrator.history[-1]
    assert state.status == DeploymentStatus.FAILED
    assert statuses(state)[-2:] == [DeploymentStatus.ROLLING_BACK, DeploymentStatus.FAILED]
    assert exc_info.value.attempts == 3
    # one rollout batch, then exactly three rollback attempts
    assert len(fleet.replace_calls) == 1 + 3
    assert orchestrator.active is None


@pytest.mark.asyncio
async def test_batch_retries(fleet, gate, orchestrator, deployment_settings, health_feeder):
    fleet.unhealthy_versions.add("v2")
    plan = DeploymentPlan.from_settings("v2", deployment_settings, batch_retries=1)

    async with health_feeder(fleet, gate):
        state = await orchestrator.deploy(plan)

    assert state.status == DeploymentStatus.ROLLED_BACK
    assert state.batches[0].attempts == 2
    # two rollout attempts, one rollback
    assert len(fleet.replace_calls) == 3


@pytest.mark.asyncio
async def test_second_deployment_is_rejected(orchestrator, plan):
    first = orchestrator.begin(plan)

    with pytest.raises(DeploymentInProgressError) as exc_info:
        orchestrator.begin(DeploymentPlan(target_version="v3"))

    assert exc_info.value.active_deployment_id == first.deployment_id
    assert orchestrator.active is first


@pytest.mark.parametrize(
    "overrides",
    [
        {"target_version": ""},
        {"batch_size": 0},
        {"deployment_timeout": 0},
        {"batch_timeout": -1.0},
        {"rollback_attempts": 0},
    ],
)
def test_invalid_plan_is_rejected_before_any_change(fleet, orchestrator, overrides):
    values = {"target_version": "v2", **overrides}
    plan = DeploymentPlan(**values)

    with pytest.raises(InvalidPlanError):
        orchestrator.begin(plan)

    assert orchestrator.active is None
    assert fleet.replace_calls == []


@pytest.mark.asyncio
async def test_cancel_rolls_back(fleet, gate, orchestrator, plan, health_feeder, waiter):
    # v2 never reports, so the first batch stays pending
    async with health_feeder(fleet, gate, skip_versions=["v2"]):
        task = asyncio.create_task(orchestrator.deploy(plan))
        await waiter(lambda: fleet.replace_calls)

        assert orchestrator.cancel("operator abort")
        state = await task

    assert state.status == DeploymentStatus.ROLLED_BACK
    assert state.error.startswith("Cancelled")
    assert versions(fleet) == ["v1"] * 4


def test_cancel_without_deployment(orchestrator):
    assert orchestrator.cancel() is False


@pytest.mark.asyncio
async def test_deployment_timeout_forces_rollback(
    fleet, gate, orchestrator, deployment_settings, health_feeder
):
    plan = DeploymentPlan.from_settings(
        "v2",
        deployment_settings,
        deployment_timeout=0.1,
        batch_timeout=5.0,
        rollback_on_failure=False,
    )

    async with health_feeder(fleet, gate, skip_versions=["v2"]):
        state = await orchestrator.deploy(plan)

    assert state.status == DeploymentStatus.ROLLED_BACK
    assert state.error == "Deployment timeout exceeded"
    assert versions(fleet) == ["v1"] * 4


@pytest.mark.asyncio
async def test_unhealthy_during_stabilization_rolls_back(
    fleet, gate, orchestrator, deployment_settings, health_feeder, waiter
):
    plan = DeploymentPlan.from_settings("v2", deployment_settings, stabilization_window=5.0)

    async with health_feeder(fleet, gate):
        task = asyncio.create_task(orchestrator.deploy(plan))
        await waiter(
            lambda: orchestrator.active is not None
            and orchestrator.active.status == DeploymentStatus.OBSERVING
        )
        fleet.unhealthy_versions.add("v2")
        state = await task

    assert state.status == DeploymentStatus.ROLLED_BACK
    assert "stabilization" in state.error
    assert len(state.batches) == 2
    assert versions(fleet) == ["v1"] * 4


@pytest.mark.asyncio
async def test_secrets_are_passed_by_reference(
    fleet, gate, orchestrator, deployment_settings, health_feeder
):
    plan = DeploymentPlan.from_settings("v2", deployment_settings)
    plan.secrets = {"DB_PASSWORD": "arn:aws:secretsmanager:us-east-1:123:secret:db"}

    async with health_feeder(fleet, gate):
        await orchestrator.deploy(plan)

    assert len(fleet.secret_refs) == 4
    assert all(refs == plan.secrets for refs in fleet.secret_refs.values())


@pytest.mark.asyncio
async def test_batch_callback_runs_per_batch(fleet, gate, orchestrator, plan, health_feeder):
    seen = []

    async def on_batch(state, batch):
        seen.append(batch.index)

    async with health_feeder(fleet, gate):
        await orchestrator.deploy(plan, on_batch_complete=on_batch)

    assert seen == [0, 1]


@pytest.mark.asyncio
async def test_history_and_stats(fleet, gate, orchestrator, plan, health_feeder):
    async with health_feeder(fleet, gate):
        await orchestrator.deploy(plan)

    history = orchestrator.get_history()
    assert history[0]["status"] == "succeeded"
    assert history[0]["plan"]["target_version"] == "v2"
    assert orchestrator.get_deployment_stats()["succeeded"] == 1


@pytest.mark.asyncio
async def test_old_units_leave_rotation_before_they_stop(
    gate, deployment_settings, plan, health_feeder
):
    fleet = DrainRecordingFleet(version="v1")
    fleet.add_units(PoolId.SPOT, 3)
    fleet.add_units(PoolId.ON_DEMAND, 1)
    orchestrator = DeploymentOrchestrator(fleet, fleet, gate, deployment_settings)

    async with health_feeder(fleet, gate):
        state = await orchestrator.deploy(plan)

    assert state.status == DeploymentStatus.SUCCEEDED
    assert len(fleet.drained) == 2
    assert all(all(running.values()) for running in fleet.drained)


@pytest.mark.asyncio
async def test_failed_launch_puts_old_units_back_in_rotation(
    fleet, gate, orchestrator, plan, health_feeder
):
    fleet.unlaunchable_versions.add("v2")

    async with health_feeder(fleet, gate):
        state = await orchestrator.deploy(plan)

    assert state.status == DeploymentStatus.ROLLED_BACK
    assert versions(fleet) == ["v1"] * 4
    assert fleet.registered == set(fleet.units)
    assert fleet.version == "v1"
