"""
Aggregates per-unit health check results into batch go/no-go decisions.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from fleetctl.config.core_configs import HealthCheckConfig
from fleetctl.utils.logger import get_logger

from .exceptions import BatchHealthTimeoutError

logger = get_logger(__name__)


class UnitHealth(str, Enum):
    INITIAL = "initial"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class BatchHealth(str, Enum):
    PENDING = "pending"
    HEALTHY = "healthy"
    FAILED = "failed"


@dataclass
class UnitHealthRecord:
    """Consecutive check counters for one compute unit"""

    unit_id: str
    status: UnitHealth = UnitHealth.INITIAL
    consecutive_passes: int = 0
    consecutive_failures: int = 0
    last_check_time: float = 0.0


class HealthGate:
    """Tracks unit health with healthy/unhealthy thresholds"""

    def __init__(self, config: Optional[HealthCheckConfig] = None):
        self.config = config or HealthCheckConfig()
        self.records: Dict[str, UnitHealthRecord] = {}
        self._changed = asyncio.Event()

    def record(self, unit_id: str, passed: bool, timestamp: Optional[float] = None):
        """Record one health check result for a unit"""
        record = self.records.get(unit_id)
        if record is None:
            record = self.records[unit_id] = UnitHealthRecord(unit_id=unit_id)

        record.last_check_time = timestamp or time.time()
        previous = record.status

        if passed:
            record.consecutive_passes += 1
            record.consecutive_failures = 0
            if record.consecutive_passes >= self.config.healthy_threshold:
                record.status = UnitHealth.HEALTHY
        else:
            record.consecutive_failures += 1
            record.consecutive_passes = 0
            if record.consecutive_failures >= self.config.unhealthy_threshold:
                record.status = UnitHealth.UNHEALTHY

        if record.status != previous:
            logger.info(
                "Unit health changed",
                unit_id=unit_id,
                previous=previous.value,
                current=record.status.value,
            )

        self._notify()
        return record.status

    def record_many(self, results: Dict[str, bool], timestamp: Optional[float] = None):
        for unit_id, passed in results.items():
            self.record(unit_id, passed, timestamp)

    def status(self, unit_id: str) -> UnitHealth:
        record = self.records.get(unit_id)
        return record.status if record else UnitHealth.INITIAL

    def batch_status(self, unit_ids: Iterable[str]) -> BatchHealth:
        statuses = [self.status(unit_id) for unit_id in unit_ids]
        if any(s == UnitHealth.UNHEALTHY for s in statuses):
            return BatchHealth.FAILED
        if statuses and all(s == UnitHealth.HEALTHY for s in statuses):
            return BatchHealth.HEALTHY
        return BatchHealth.PENDING

    def unhealthy_units(self, unit_ids: Iterable[str]) -> List[str]:
        return [u for u in unit_ids if self.status(u) == UnitHealth.UNHEALTHY]

    def is_fleet_healthy(self, unit_ids: Iterable[str]) -> bool:
        """No unit in the fleet is unhealthy"""
        return not self.unhealthy_units(unit_ids)

    def forget(self, unit_ids: Iterable[str]) -> None:
        """Drop records of terminated units"""
        for unit_id in unit_ids:
            self.records.pop(unit_id, None)

    async def wait_for_batch(self, unit_ids: Iterable[str], timeout: float) -> None:
        """Block until every unit is healthy.

        Raises BatchHealthTimeoutError if any unit turns unhealthy or the
        timeout elapses first.
        """
        unit_ids = list(unit_ids)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            state = self.batch_status(unit_ids)
            if state == BatchHealth.HEALTHY:
                return
            if state == BatchHealth.FAILED:
                raise BatchHealthTimeoutError(
                    unit_ids, timeout, self.unhealthy_units(unit_ids)
                )

            remaining = deadline - loop.time()
            if remaining <= 0 or not await self._wait_changed(remaining):
                raise BatchHealthTimeoutError(unit_ids, timeout)

    async def watch_for_unhealthy(
        self, unit_ids: Iterable[str], duration: float
    ) -> Optional[str]:
        """Return the first unit to turn unhealthy within duration, else None"""
        unit_ids = list(unit_ids)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration

        while True:
            unhealthy = self.unhealthy_units(unit_ids)
            if unhealthy:
                return unhealthy[0]

            remaining = deadline - loop.time()
            if remaining <= 0 or not await self._wait_changed(remaining):
                return None

    async def _wait_changed(self, timeout: float) -> bool:
        self._changed.clear()
        try:
            await asyncio.wait_for(self._changed.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _notify(self) -> None:
        self._changed.set()

    def get_stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in UnitHealth}
        for record in self.records.values():
            counts[record.status.value] += 1
        return counts
