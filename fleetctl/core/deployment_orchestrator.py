"""
Rolling deployments with health-gated batches and automatic rollback.

A deployment walks pending -> rolling_out -> observing -> succeeded. Any
unhealthy batch, unhealthy unit while observing, cancellation or deployment
timeout sends it to rolling_back, which restores the previous version batch
by batch in reverse order. If that cannot be done within the retry budget the
deployment ends in failed and RollbackFailedError is raised for an operator.
"""

import asyncio
import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from fleetctl.config.core_configs import DeploymentSettings
from fleetctl.providers.base import ComputeProvisioner, LoadBalancer
from fleetctl.utils.logger import get_logger

from .exceptions import (
    BatchHealthTimeoutError,
    DeploymentInProgressError,
    InvalidPlanError,
    RollbackFailedError,
)
from .health_gate import HealthGate

logger = get_logger(__name__)


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    ROLLING_OUT = "rolling_out"
    OBSERVING = "observing"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_STATUSES = {
    DeploymentStatus.SUCCEEDED,
    DeploymentStatus.ROLLED_BACK,
    DeploymentStatus.FAILED,
}

ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.ROLLING_OUT, DeploymentStatus.FAILED},
    DeploymentStatus.ROLLING_OUT: {
        DeploymentStatus.OBSERVING,
        DeploymentStatus.ROLLING_BACK,
        DeploymentStatus.FAILED,
    },
    DeploymentStatus.OBSERVING: {
        DeploymentStatus.SUCCEEDED,
        DeploymentStatus.ROLLING_BACK,
        DeploymentStatus.FAILED,
    },
    DeploymentStatus.ROLLING_BACK: {
        DeploymentStatus.ROLLED_BACK,
        DeploymentStatus.FAILED,
    },
}


@dataclass
class DeploymentPlan:
    """What to deploy and how carefully"""

    target_version: str
    batch_size: int = 1
    health_check_grace_period: float = 60.0
    rollback_on_failure: bool = True
    stabilization_window: float = 60.0
    batch_timeout: Optional[float] = None
    deployment_timeout: float = 1800.0
    rollback_attempts: int = 3
    batch_retries: int = 0
    secrets: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls, target_version: str, settings: DeploymentSettings, **overrides: Any
    ) -> "DeploymentPlan":
        values = {
            "batch_size": settings.batch_size,
            "health_check_grace_period": settings.health_check_grace_period,
            "rollback_on_failure": settings.rollback_on_failure,
            "stabilization_window": settings.stabilization_window,
            "batch_timeout": settings.batch_timeout,
            "deployment_timeout": settings.deployment_timeout,
            "rollback_attempts": settings.rollback_attempts,
            "batch_retries": settings.batch_retries,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(target_version=target_version, **values)

    @property
    def effective_batch_timeout(self) -> float:
        if self.batch_timeout is not None:
            return self.batch_timeout
        return self.health_check_grace_period

    def validate(self) -> None:
        if not isinstance(self.target_version, str) or not self.target_version.strip():
            raise InvalidPlanError("target version must be non-empty")
        if self.batch_size < 1:
            raise InvalidPlanError("batch size must be at least 1")
        if self.health_check_grace_period < 0:
            raise InvalidPlanError("health check grace period cannot be negative")
        if self.batch_timeout is not None and self.batch_timeout <= 0:
            raise InvalidPlanError("batch timeout must be positive")
        if self.stabilization_window < 0:
            raise InvalidPlanError("stabilization window cannot be negative")
        if self.deployment_timeout <= 0:
            raise InvalidPlanError("deployment timeout must be positive")
        if self.rollback_attempts < 1:
            raise InvalidPlanError("rollback attempts must be at least 1")
        if self.batch_retries < 0:
            raise InvalidPlanError("batch retries cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_version": self.target_version,
            "batch_size": self.batch_size,
            "health_check_grace_period": self.health_check_grace_period,
            "rollback_on_failure": self.rollback_on_failure,
            "stabilization_window": self.stabilization_window,
            "batch_timeout": self.effective_batch_timeout,
            "deployment_timeout": self.deployment_timeout,
            "rollback_attempts": self.rollback_attempts,
            "batch_retries": self.batch_retries,
            # identifiers only
            "secrets": dict(self.secrets),
        }


@dataclass
class BatchRecord:
    index: int
    old_unit_ids: List[str]
    new_unit_ids: List[str] = field(default_factory=list)
    restored_unit_ids: List[str] = field(default_factory=list)
    status: str = "pending"  # pending | healthy | failed | rolled_back
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "old_unit_ids": list(self.old_unit_ids),
            "new_unit_ids": list(self.new_unit_ids),
            "restored_unit_ids": list(self.restored_unit_ids),
            "status": self.status,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class Transition:
    from_status: DeploymentStatus
    to_status: DeploymentStatus
    timestamp: float
    reason: str = ""


@dataclass
class DeploymentState:
    """One deployment's state machine instance"""

    deployment_id: str
    plan: DeploymentPlan
    status: DeploymentStatus = DeploymentStatus.PENDING
    previous_version: Optional[str] = None
    batches: List[BatchRecord] = field(default_factory=list)
    transitions: List[Transition] = field(default_factory=list)
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "plan": self.plan.to_dict(),
            "status": self.status.value,
            "previous_version": self.previous_version,
            "batches": [batch.to_dict() for batch in self.batches],
            "transitions": [
                {
                    "from": t.from_status.value,
                    "to": t.to_status.value,
                    "timestamp": t.timestamp,
                    "reason": t.reason,
                }
                for t in self.transitions
            ],
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


BatchCallback = Callable[[DeploymentState, BatchRecord], Awaitable[None]]


class _Cancelled(Exception):
    pass


class _RestoreError(Exception):
    def __init__(self, unit_ids: List[str]):
        super().__init__(f"restore failed for {unit_ids}")
        self.unit_ids = unit_ids


class DeploymentOrchestrator:
    """Drives one rolling deployment at a time for a fleet"""

    def __init__(
        self,
        provisioner: ComputeProvisioner,
        load_balancer: LoadBalancer,
        health_gate: HealthGate,
        settings: Optional[DeploymentSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provisioner = provisioner
        self.load_balancer = load_balancer
        self.health_gate = health_gate
        self.settings = settings or DeploymentSettings()
        self._clock = clock

        self.active: Optional[DeploymentState] = None
        self.history: Deque[DeploymentState] = deque(maxlen=self.settings.history_size)
        self._cancel_event = asyncio.Event()
        self._cancel_reason = ""

        self._deployment_stats = {
            "total_deployments": 0,
            "succeeded": 0,
            "rolled_back": 0,
            "failed": 0,
        }

    @property
    def is_active(self) -> bool:
        return self.active is not None

    def begin(self, plan: DeploymentPlan) -> DeploymentState:
        """Validate the plan and take the fleet's deployment lock"""
        plan.validate()

        if self.active is not None:
            raise DeploymentInProgressError(self.active.deployment_id)

        state = DeploymentState(
            deployment_id=f"dep-{uuid.uuid4().hex[:12]}",
            plan=plan,
            started_at=self._clock(),
        )
        self.active = state
        self._cancel_event.clear()
        self._cancel_reason = ""

        logger.info(
            "Deployment requested",
            deployment_id=state.deployment_id,
            target_version=plan.target_version,
            batch_size=plan.batch_size,
        )
        return state

    async def deploy(
        self, plan: DeploymentPlan, on_batch_complete: Optional[BatchCallback] = None
    ) -> DeploymentState:
        """Run a deployment to completion"""
        state = self.begin(plan)
        return await self.execute(state, on_batch_complete)

    def cancel(self, reason: str = "cancelled by operator") -> bool:
        """Request cancellation of the active deployment"""
        if self.active is None or self.active.is_terminal:
            return False
        if self.active.status == DeploymentStatus.ROLLING_BACK:
            return False

        self._cancel_reason = reason
        self._cancel_event.set()
        logger.info(
            "Deployment cancellation requested",
            deployment_id=self.active.deployment_id,
            reason=reason,
        )
        return True

    async def execute(
        self, state: DeploymentState, on_batch_complete: Optional[BatchCallback] = None
    ) -> DeploymentState:
        """Run a deployment previously started with begin()"""
        if state is not self.active:
            raise RuntimeError(f"Deployment {state.deployment_id} is not active")

        plan = state.plan
        loop = asyncio.get_running_loop()
        deadline = loop.time() + plan.deployment_timeout

        try:
            if state.previous_version is None:
                state.previous_version = await self._current_version()

            self._transition(state, DeploymentStatus.ROLLING_OUT)

            failure, forced = await self._guarded(
                self._roll_out(state, deadline, on_batch_complete)
            )
            if failure is None:
                self._transition(state, DeploymentStatus.OBSERVING)
                failure, forced = await self._guarded(self._observe(state, deadline))

            if failure is None:
                self._transition(state, DeploymentStatus.SUCCEEDED)
                return state

            state.error = failure
            if plan.rollback_on_failure or forced:
                self._transition(state, DeploymentStatus.ROLLING_BACK, failure)
                await self._roll_back(state)
                self._transition(state, DeploymentStatus.ROLLED_BACK)
            else:
                self._transition(state, DeploymentStatus.FAILED, failure)

            return state

        finally:
            self._finish(state)

    async def _guarded(self, coro) -> Tuple[Optional[str], bool]:
        """Run a phase; returns (failure reason, rollback forced)"""
        try:
            return await coro
        except Exception as e:
            logger.error(f"Deployment phase error: {e}")
            return f"Error: {e}", False

    async def _roll_out(
        self,
        state: DeploymentState,
        deadline: float,
        on_batch_complete: Optional[BatchCallback],
    ) -> Tuple[Optional[str], bool]:
        plan = state.plan
        await self.provisioner.set_version(plan.target_version)
        replaced: set = set()

        while True:
            interrupt = self._interrupt(deadline)
            if interrupt:
                return interrupt, True

            units = await self.provisioner.list_units()
            outdated = [
                u.unit_id
                for u in units
                if u.version != plan.target_version and u.unit_id not in replaced
            ]
            if not outdated:
                return None, False

            batch = BatchRecord(
                index=len(state.batches), old_unit_ids=outdated[: plan.batch_size]
            )
            state.batches.append(batch)
            replaced.update(batch.old_unit_ids)

            failure, forced = await self._run_batch(state, batch, deadline)
            if failure:
                batch.status = "failed"
                return failure, forced

            batch.status = "healthy"
            logger.info(
                "Deployment batch healthy",
                deployment_id=state.deployment_id,
                batch=batch.index,
                units=batch.new_unit_ids,
            )

            if on_batch_complete is not None:
                try:
                    await on_batch_complete(state, batch)
                except Exception as e:
                    logger.error(f"Batch completion callback failed: {e}")

    async def _run_batch(
        self, state: DeploymentState, batch: BatchRecord, deadline: float
    ) -> Tuple[Optional[str], bool]:
        plan = state.plan
        to_replace = list(batch.old_unit_ids)
        loop = asyncio.get_running_loop()

        while True:
            batch.attempts += 1

            new_ids = await self._swap_units(
                to_replace, plan.target_version, plan.secrets
            )
            batch.new_unit_ids = new_ids

            timeout = min(plan.effective_batch_timeout, deadline - loop.time())
            try:
                await self._until_cancelled(
                    self.health_gate.wait_for_batch(new_ids, max(timeout, 0.0))
                )
                return None, False
            except _Cancelled:
                return f"Cancelled: {self._cancel_reason}", True
            except BatchHealthTimeoutError as e:
                if loop.time() >= deadline:
                    return "Deployment timeout exceeded", True
                failure = f"Batch {batch.index}: {e}"

            if batch.attempts > plan.batch_retries:
                return failure, False

            logger.warning(
                "Retrying deployment batch",
                deployment_id=state.deployment_id,
                batch=batch.index,
                attempt=batch.attempts,
                reason=failure,
            )
            to_replace = batch.new_unit_ids

    async def _swap_units(
        self,
        unit_ids: List[str],
        version: str,
        secrets: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """Take old units out of rotation, replace them and register the new ones"""
        await self.load_balancer.deregister(unit_ids)
        try:
            new_ids = await self.provisioner.replace_units(unit_ids, version, secrets)
        except Exception:
            # Old units are still running
            await self.load_balancer.register(unit_ids)
            raise

        await self.load_balancer.register(new_ids)
        self.health_gate.forget(unit_ids)
        return list(new_ids)

    async def _observe(
        self, state: DeploymentState, deadline: float
    ) -> Tuple[Optional[str], bool]:
        plan = state.plan
        loop = asyncio.get_running_loop()

        interrupt = self._interrupt(deadline)
        if interrupt:
            return interrupt, True

        units = await self.provisioner.list_units()
        new_ids = [u.unit_id for u in units if u.version == plan.target_version]

        remaining = deadline - loop.time()
        window = min(plan.stabilization_window, remaining)
        try:
            unhealthy = await self._until_cancelled(
                self.health_gate.watch_for_unhealthy(new_ids, max(window, 0.0))
            )
        except _Cancelled:
            return f"Cancelled: {self._cancel_reason}", True

        if unhealthy:
            return f"Unit {unhealthy} became unhealthy during stabilization", False
        if window < plan.stabilization_window:
            return "Deployment timeout exceeded", True
        return None, False

    async def _roll_back(self, state: DeploymentState) -> None:
        plan = state.plan
        previous = state.previous_version
        if previous is None:
            self._fail(
                state,
                RollbackFailedError(state.deployment_id, 0, "no known-good version"),
            )

        # Launch version resets even when no batch has new units
        try:
            await self.provisioner.set_version(previous)
        except Exception as e:
            logger.warning(
                f"Failed to reset launch version: {e}",
                deployment_id=state.deployment_id,
            )

        for batch in reversed(state.batches):
            if not batch.new_unit_ids:
                batch.status = "rolled_back"
                continue

            to_restore = list(batch.new_unit_ids)
            last_error = ""
            for attempt in range(1, plan.rollback_attempts + 1):
                try:
                    await self._restore_batch(batch, to_restore, previous, plan)
                except _RestoreError as e:
                    to_restore = e.unit_ids
                    last_error = str(e.__cause__)
                    logger.warning(
                        "Rollback attempt failed",
                        deployment_id=state.deployment_id,
                        batch=batch.index,
                        attempt=attempt,
                        error=last_error,
                    )
                    continue
                break
            else:
                self._fail(
                    state,
                    RollbackFailedError(
                        state.deployment_id, plan.rollback_attempts, last_error
                    ),
                )

    async def _restore_batch(
        self,
        batch: BatchRecord,
        unit_ids: List[str],
        version: str,
        plan: DeploymentPlan,
    ) -> None:
        """Put one batch back on version; raises _RestoreError with the ids to retry"""
        try:
            await self.provisioner.set_version(version)
            live = {u.unit_id for u in await self.provisioner.list_units()}
            unit_ids = [unit_id for unit_id in unit_ids if unit_id in live]
            if unit_ids:
                restored = await self._swap_units(unit_ids, version)
                unit_ids = restored
                await self.health_gate.wait_for_batch(
                    restored, plan.effective_batch_timeout
                )
        except Exception as e:
            raise _RestoreError(unit_ids) from e

        batch.restored_unit_ids = list(unit_ids)
        batch.status = "rolled_back"

    def _fail(self, state: DeploymentState, error: RollbackFailedError) -> None:
        state.error = str(error)
        self._transition(state, DeploymentStatus.FAILED, str(error))
        logger.critical(
            "Deployment requires manual intervention",
            deployment_id=state.deployment_id,
            error=str(error),
        )
        raise error

    async def _until_cancelled(self, coro):
        """Await coro unless cancellation is requested first"""
        work = asyncio.ensure_future(coro)
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (work, cancelled):
                if not task.done():
                    task.cancel()
            await asyncio.gather(work, cancelled, return_exceptions=True)

        if work in done:
            return work.result()
        raise _Cancelled()

    def _interrupt(self, deadline: float) -> Optional[str]:
        if self._cancel_event.is_set():
            return f"Cancelled: {self._cancel_reason}"
        if asyncio.get_running_loop().time() >= deadline:
            return "Deployment timeout exceeded"
        return None

    async def _current_version(self) -> Optional[str]:
        units = await self.provisioner.list_units()
        if not units:
            return None
        return Counter(u.version for u in units).most_common(1)[0][0]

    def _transition(
        self, state: DeploymentState, new_status: DeploymentStatus, reason: str = ""
    ) -> None:
        current = state.status
        if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise RuntimeError(
                f"Illegal deployment transition {current.value} -> {new_status.value}"
            )

        transition = Transition(
            from_status=current,
            to_status=new_status,
            timestamp=self._clock(),
            reason=reason,
        )
        state.transitions.append(transition)
        state.status = new_status

        logger.info(
            "Deployment transition",
            deployment_id=state.deployment_id,
            before=current.value,
            after=new_status.value,
            timestamp=transition.timestamp,
            reason=reason,
        )

    def _finish(self, state: DeploymentState) -> None:
        if not state.is_terminal:
            # Unexpected error or task cancellation mid-flight
            state.error = state.error or "Deployment interrupted"
            self._transition(state, DeploymentStatus.FAILED, state.error)

        state.finished_at = self._clock()
        self.history.append(state)
        if self.active is state:
            self.active = None

        self._deployment_stats["total_deployments"] += 1
        key = {
            DeploymentStatus.SUCCEEDED: "succeeded",
            DeploymentStatus.ROLLED_BACK: "rolled_back",
            DeploymentStatus.FAILED: "failed",
        }[state.status]
        self._deployment_stats[key] += 1

    def get_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [state.to_dict() for state in list(self.history)[-limit:]]

    def get_deployment_stats(self) -> Dict[str, Any]:
        return {
            **self._deployment_stats,
            "active_deployment": self.active.deployment_id if self.active else None,
        }
