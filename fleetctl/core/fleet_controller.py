"""
Reconciliation loop for one fleet.

Samples, health reports, ticks and deployment progress arrive as events on a
bounded queue and are processed one at a time, so the loop is the only
writer of FleetState and the health gate. Scaling decisions made while a
deployment is running are parked and applied once a batch completes or the
deployment ends.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from fleetctl.config.config_manager import Config
from fleetctl.monitoring.metrics_sampler import MetricsSampler
from fleetctl.monitoring.prometheus_exporter import PrometheusExporter
from fleetctl.monitoring.resource_metrics import UtilizationSample
from fleetctl.providers.base import (
    AlarmDefinition,
    ComputeProvisioner,
    LoadBalancer,
    MetricsBackend,
)
from fleetctl.utils.logger import get_logger

from .capacity_planner import CapacityPlanner, ScalingDecision
from .deployment_orchestrator import (
    BatchRecord,
    DeploymentOrchestrator,
    DeploymentPlan,
    DeploymentState,
    DeploymentStatus,
)
from .exceptions import RollbackFailedError
from .fleet_state import FleetSnapshot, FleetState
from .health_gate import HealthGate
from .placement_allocator import PlacementAllocator

logger = get_logger(__name__)


@dataclass(frozen=True)
class SampleReceived:
    sample: UtilizationSample


@dataclass(frozen=True)
class HealthReport:
    results: Dict[str, bool]
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Tick:
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class BatchCompleted:
    deployment_id: str
    batch_index: int
    # Resolved once any deferred decision has been applied
    applied: Optional["asyncio.Future[None]"] = field(default=None, compare=False)


@dataclass(frozen=True)
class DeploymentFinished:
    deployment_id: str
    status: DeploymentStatus


ControllerEvent = Union[
    SampleReceived, HealthReport, Tick, BatchCompleted, DeploymentFinished
]


class FleetController:
    """Owns the fleet state and drives scaling and deployments"""

    def __init__(
        self,
        config: Config,
        provisioner: ComputeProvisioner,
        load_balancer: LoadBalancer,
        metrics_backend: Optional[MetricsBackend] = None,
        sampler: Optional[MetricsSampler] = None,
        exporter: Optional[PrometheusExporter] = None,
        clock=time.time,
    ):
        self.config = config
        self.provisioner = provisioner
        self.load_balancer = load_balancer
        self.metrics_backend = metrics_backend
        self.sampler = sampler
        self._clock = clock

        self.fleet = FleetState.from_config(
            config.fleet_name,
            config.scaling,
            config.placement,
            current_version=config.provider.initial_version,
        )
        self.planner = CapacityPlanner(
            config.scaling, config.monitoring.sample_period, clock
        )
        self.allocator = PlacementAllocator()
        self.health_gate = HealthGate(config.health_check)
        self.orchestrator = DeploymentOrchestrator(
            provisioner, load_balancer, self.health_gate, config.deployment, clock
        )
        self.exporter = exporter or PrometheusExporter(
            enabled=config.monitoring.enable_prometheus_export,
            namespace=config.monitoring.metrics_namespace,
        )

        self.events: "asyncio.Queue[ControllerEvent]" = asyncio.Queue(
            maxsize=config.reconcile.queue_size
        )
        self.deferred_decision: Optional[ScalingDecision] = None
        self.alarm_states: Dict[str, str] = {}

        self._tasks: List[asyncio.Task] = []
        self._deployment_task: Optional[asyncio.Task] = None
        self._running = False

    # Lifecycle

    async def start(self) -> None:
        """Push initial placement and alarms, then start the loop tasks"""
        if self._running:
            return
        self._running = True

        await self._define_alarms()
        await self._apply_desired(self.fleet.desired_count)

        self._tasks = [
            asyncio.create_task(self._event_loop(), name="fleet-events"),
            asyncio.create_task(self._ticker(), name="fleet-ticker"),
            asyncio.create_task(self._health_poller(), name="fleet-health"),
        ]
        if self.sampler is not None:
            self._tasks.append(
                asyncio.create_task(self._sample_producer(), name="fleet-sampler")
            )

        logger.info(
            "Fleet controller started",
            fleet=self.fleet.fleet_name,
            desired_count=self.fleet.desired_count,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        tasks = list(self._tasks)
        if self._deployment_task is not None and not self._deployment_task.done():
            tasks.append(self._deployment_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []

        logger.info("Fleet controller stopped", fleet=self.fleet.fleet_name)

    @property
    def is_running(self) -> bool:
        return self._running

    # Event producers

    async def submit(self, event: ControllerEvent) -> None:
        """Enqueue an event; waits while the queue is full"""
        await self.events.put(event)

    async def _event_loop(self) -> None:
        while True:
            event = await self.events.get()
            try:
                await self.process_event(event)
            except Exception as e:
                logger.error(f"Error processing {type(event).__name__}: {e}")
            finally:
                self.events.task_done()

    async def _ticker(self) -> None:
        interval = self.config.reconcile.reconcile_interval
        while True:
            await asyncio.sleep(interval)
            await self.submit(Tick(self._clock()))

    async def _health_poller(self) -> None:
        interval = self.config.health_check.interval
        while True:
            try:
                results = await self.load_balancer.describe_health()
            except Exception as e:
                logger.error(f"Health poll failed: {e}")
            else:
                await self.submit(HealthReport(results, self._clock()))
            await asyncio.sleep(interval)

    async def _sample_producer(self) -> None:
        async for sample in self.sampler.samples():
            await self.submit(SampleReceived(sample))

    # Event handling

    async def process_event(self, event: ControllerEvent) -> None:
        """Apply one event to the fleet state"""
        if isinstance(event, SampleReceived):
            await self._on_sample(event.sample)
        elif isinstance(event, HealthReport):
            self.health_gate.record_many(event.results, event.timestamp)
        elif isinstance(event, Tick):
            await self._on_tick(event.timestamp)
        elif isinstance(event, BatchCompleted):
            try:
                await self._apply_deferred(f"batch {event.batch_index} completed")
            finally:
                if event.applied is not None and not event.applied.done():
                    event.applied.set_result(None)
        elif isinstance(event, DeploymentFinished):
            await self._on_deployment_finished(event)
        else:
            raise TypeError(f"Unknown controller event: {event!r}")

    async def _on_sample(self, sample: UtilizationSample) -> None:
        self.planner.record_sample(sample)
        self.exporter.update_utilization(self.fleet.fleet_name, sample)

        if self.metrics_backend is not None:
            try:
                await self.metrics_backend.publish_sample(sample)
            except Exception as e:
                logger.warning(f"Failed to publish sample: {e}")

    async def _on_tick(self, now: float) -> None:
        await self._refresh_observed()

        decision = self.planner.evaluate(self.fleet.desired_count, now)
        if not decision.is_hold:
            if self.orchestrator.is_active:
                # Latest decision wins
                self.deferred_decision = decision
                logger.info(
                    "Scaling decision deferred during deployment",
                    direction=decision.direction.value,
                    new_desired_count=decision.new_desired_count,
                    deployment_id=self.orchestrator.active.deployment_id,
                )
            else:
                await self._apply_decision(decision)
        elif not self.orchestrator.is_active:
            await self._converge()

        await self._poll_alarms()
        self.exporter.update_fleet_metrics(self.snapshot())

    async def _on_deployment_finished(self, event: DeploymentFinished) -> None:
        state = self._find_deployment(event.deployment_id)
        if state is not None:
            if event.status == DeploymentStatus.SUCCEEDED:
                self.fleet.current_version = state.plan.target_version
            elif event.status == DeploymentStatus.ROLLED_BACK:
                self.fleet.current_version = state.previous_version

        self.exporter.record_deployment(self.fleet.fleet_name, event.status.value)
        await self._apply_deferred(f"deployment {event.status.value}")
        self.exporter.update_fleet_metrics(self.snapshot())

    # Scaling

    async def _apply_deferred(self, trigger: str) -> None:
        decision = self.deferred_decision
        if decision is None:
            return
        self.deferred_decision = None

        logger.info(
            "Applying deferred scaling decision",
            trigger=trigger,
            new_desired_count=decision.new_desired_count,
        )
        await self._apply_decision(decision)

    async def _apply_decision(self, decision: ScalingDecision) -> None:
        self.exporter.record_scaling_decision(
            self.fleet.fleet_name, decision.direction.value
        )
        await self._apply_desired(decision.new_desired_count)

    async def _apply_desired(self, desired_count: int) -> None:
        desired_count = max(
            self.fleet.min_count, min(self.fleet.max_count, desired_count)
        )
        self.fleet.desired_count = desired_count
        self.allocator.apply(self.fleet, desired_count)

        try:
            await self.provisioner.set_pool_counts(self.fleet.pool_counts())
        except Exception as e:
            # Targets stay recorded; the next tick converges again
            logger.error(f"Failed to apply pool counts: {e}")

    async def _converge(self) -> None:
        targets = self.fleet.pool_counts()
        observed = {
            pool_id: self.fleet.pool_running.get(pool_id, 0)
            + self.fleet.pool_pending.get(pool_id, 0)
            for pool_id in targets
        }
        if observed == targets:
            return

        logger.info(
            "Converging pools",
            targets={k.value: v for k, v in targets.items()},
            observed={k.value: v for k, v in observed.items()},
        )
        try:
            await self.provisioner.set_pool_counts(targets)
        except Exception as e:
            logger.error(f"Failed to converge pool counts: {e}")

    async def _refresh_observed(self) -> None:
        try:
            counts = await self.provisioner.describe_counts()
        except Exception as e:
            logger.warning(f"Failed to describe pool counts: {e}")
            return

        self.fleet.update_observed(
            {pool: c.running for pool, c in counts.items()},
            {pool: c.pending for pool, c in counts.items()},
        )

    # Alarms

    def alarm_definitions(self) -> List[AlarmDefinition]:
        thresholds = self.config.monitoring.alert_thresholds
        periods = max(
            1,
            int(
                self.config.scaling.evaluation_window
                // self.config.monitoring.sample_period
            ),
        )
        metrics = {"cpu_percent": "cpu", "memory_percent": "memory"}

        return [
            AlarmDefinition(
                name=f"{self.fleet.fleet_name}-{metric}-high",
                metric=metric,
                threshold=thresholds[key],
                evaluation_periods=periods,
            )
            for key, metric in metrics.items()
            if key in thresholds
        ]

    async def _define_alarms(self) -> None:
        if self.metrics_backend is None:
            return
        try:
            await self.metrics_backend.define_alarms(self.alarm_definitions())
        except Exception as e:
            logger.warning(f"Failed to define alarms: {e}")

    async def _poll_alarms(self) -> None:
        if self.metrics_backend is None:
            return
        try:
            states = await self.metrics_backend.describe_alarm_states()
        except Exception as e:
            logger.warning(f"Failed to read alarm states: {e}")
            return

        for name, state in states.items():
            if state != self.alarm_states.get(name):
                log = logger.warning if state == "ALARM" else logger.info
                log("Alarm state changed", alarm=name, state=state)
        self.alarm_states = dict(states)

    # Deployments

    async def request_deployment(self, plan: DeploymentPlan) -> DeploymentState:
        """Start a deployment in the background.

        Raises InvalidPlanError or DeploymentInProgressError synchronously.
        """
        state = self.orchestrator.begin(plan)
        self._deployment_task = asyncio.create_task(
            self._run_deployment(state), name=f"deployment-{state.deployment_id}"
        )
        return state

    async def wait_for_deployment(self) -> Optional[DeploymentState]:
        """Wait for the background deployment, if any, and return its state"""
        task = self._deployment_task
        if task is None:
            return None
        return await task

    def cancel_deployment(self, reason: str = "cancelled by operator") -> bool:
        return self.orchestrator.cancel(reason)

    async def _run_deployment(self, state: DeploymentState) -> DeploymentState:
        try:
            await self.orchestrator.execute(state, self._on_batch_complete)
        except RollbackFailedError as e:
            logger.critical(f"Rollback failed: {e}", deployment_id=state.deployment_id)
        except Exception as e:
            logger.error(f"Deployment error: {e}", deployment_id=state.deployment_id)

        await self.submit(DeploymentFinished(state.deployment_id, state.status))
        return state

    async def _on_batch_complete(
        self, state: DeploymentState, batch: BatchRecord
    ) -> None:
        """Hold the next batch until a deferred decision has been applied"""
        event = BatchCompleted(
            state.deployment_id,
            batch.index,
            applied=asyncio.get_running_loop().create_future(),
        )
        if not self._running:
            await self.process_event(event)
            return

        await self.submit(event)
        await event.applied

    def _find_deployment(self, deployment_id: str) -> Optional[DeploymentState]:
        for state in reversed(self.orchestrator.history):
            if state.deployment_id == deployment_id:
                return state
        return None

    # Read side

    def snapshot(self) -> FleetSnapshot:
        active = self.orchestrator.active
        return self.fleet.snapshot(active.deployment_id if active else None)

    def get_status(self) -> Dict[str, Any]:
        return {
            "fleet": self.snapshot().to_dict(),
            "cooldowns": self.planner.cooldown_status(),
            "deferred_decision": (
                self.deferred_decision.to_dict() if self.deferred_decision else None
            ),
            "alarms": dict(self.alarm_states),
            "health": self.health_gate.get_stats(),
            "deployments": self.orchestrator.get_deployment_stats(),
            "sampler": self.sampler.get_stats() if self.sampler else None,
            "queue_depth": self.events.qsize(),
        }
