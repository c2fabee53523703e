"""
In-memory compute fleet, load balancer and metrics backend.

Backs local runs of the controller and the test-suite. Health of a unit is
derived from its version so deployments of a "bad" version can be played
out end to end.
"""

import itertools
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Set

from fleetctl.config.base_types import PoolId
from fleetctl.core.exceptions import ProviderError
from fleetctl.monitoring.resource_metrics import UtilizationSample
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


def _unit_seq(unit: ComputeUnit) -> int:
    return int(unit.unit_id.rsplit("-", 1)[1])


class InMemoryFleet(ComputeProvisioner, LoadBalancer):
    """Simulated compute pools with a target group in front of them"""

    def __init__(self, version: str = "v1", auto_register: bool = True):
        self.version = version
        self.auto_register = auto_register

        self.units: Dict[str, ComputeUnit] = {}
        self.registered: Set[str] = set()
        self.secret_refs: Dict[str, Dict[str, str]] = {}

        # Versions whose units fail health checks / fail to launch
        self.unhealthy_versions: Set[str] = set()
        self.unlaunchable_versions: Set[str] = set()
        # Per-unit overrides take precedence over version health
        self.health_overrides: Dict[str, bool] = {}

        self.replace_calls: List[List[str]] = []
        self._ids = itertools.count(1)

    def _new_unit(self, pool: PoolId, version: str) -> ComputeUnit:
        unit = ComputeUnit(unit_id=f"unit-{next(self._ids)}", version=version, pool=pool)
        self.units[unit.unit_id] = unit
        if self.auto_register:
            self.registered.add(unit.unit_id)
        return unit

    def add_units(
        self, pool: PoolId, count: int, version: Optional[str] = None
    ) -> List[str]:
        """Start units directly, bypassing pool targets"""
        return [
            self._new_unit(pool, version or self.version).unit_id
            for _ in range(count)
        ]

    def _terminate(self, unit_id: str) -> None:
        self.units.pop(unit_id, None)
        self.registered.discard(unit_id)
        self.secret_refs.pop(unit_id, None)

    async def set_pool_counts(self, counts: Dict[PoolId, int]) -> None:
        for pool, target in counts.items():
            current = [u for u in self.units.values() if u.pool == pool]
            if len(current) < target:
                for _ in range(target - len(current)):
                    self._new_unit(pool, self.version)
            elif len(current) > target:
                # Outdated units go first, then the newest
                keep_order = sorted(
                    current, key=lambda u: (u.version != self.version, _unit_seq(u))
                )
                for unit in keep_order[target:]:
                    self._terminate(unit.unit_id)

    async def describe_counts(self) -> Dict[PoolId, PoolCounts]:
        counts = {}
        for pool in PoolId:
            units = [u for u in self.units.values() if u.pool == pool]
            counts[pool] = PoolCounts(
                running=sum(1 for u in units if u.status == "running"),
                pending=sum(1 for u in units if u.status == "pending"),
            )
        return counts

    async def list_units(self) -> List[ComputeUnit]:
        return sorted(self.units.values(), key=_unit_seq)

    async def replace_units(
        self,
        unit_ids: Iterable[str],
        version: str,
        secrets: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        unit_ids = list(unit_ids)
        self.replace_calls.append(unit_ids)

        if version in self.unlaunchable_versions:
            raise ProviderError("replace_units", f"cannot launch version {version}")

        new_ids = []
        for unit_id in unit_ids:
            old = self.units.get(unit_id)
            if old is None:
                raise ProviderError("replace_units", f"unknown unit {unit_id}")
            self._terminate(unit_id)
            unit = self._new_unit(old.pool, version)
            if secrets:
                self.secret_refs[unit.unit_id] = dict(secrets)
            new_ids.append(unit.unit_id)
        return new_ids

    async def set_version(self, version: str) -> None:
        self.version = version

    async def register(self, unit_ids: Iterable[str]) -> None:
        self.registered.update(u for u in unit_ids if u in self.units)

    async def deregister(self, unit_ids: Iterable[str]) -> None:
        self.registered.difference_update(unit_ids)

    async def describe_health(
        self, unit_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, bool]:
        targets = self.registered if unit_ids is None else set(unit_ids)
        results = {}
        for unit_id in targets:
            unit = self.units.get(unit_id)
            if unit is None or unit_id not in self.registered:
                continue
            results[unit_id] = self.health_overrides.get(
                unit_id, unit.version not in self.unhealthy_versions
            )
        return results


class InMemoryMetricsBackend(MetricsBackend):
    """Keeps published samples and evaluates alarms on the latest one"""

    def __init__(self, max_samples: int = 1000):
        self.samples: Deque[UtilizationSample] = deque(maxlen=max_samples)
        self.alarms: Dict[str, AlarmDefinition] = {}

    async def publish_sample(self, sample: UtilizationSample) -> None:
        self.samples.append(sample)

    async def define_alarms(self, alarms: List[AlarmDefinition]) -> None:
        for alarm in alarms:
            self.alarms[alarm.name] = alarm

    async def describe_alarm_states(self) -> Dict[str, str]:
        states = {}
        for name, alarm in self.alarms.items():
            recent = list(self.samples)[-alarm.evaluation_periods:]
            values = [s.value(alarm.metric) for s in recent if s.has_data]
            if len(values) < alarm.evaluation_periods:
                states[name] = "INSUFFICIENT_DATA"
            elif all(v > alarm.threshold for v in values):
                states[name] = "ALARM"
            else:
                states[name] = "OK"
        return states
