"""
Interfaces of the external systems the controller drives.

The controller only ever talks to compute, load balancing and metrics
through these classes. Secret values never pass through here: deployment
plans carry secret identifiers which the provisioner hands to the platform.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from fleetctl.config.base_types import PoolId
from fleetctl.monitoring.resource_metrics import UtilizationSample


@dataclass(frozen=True)
class ComputeUnit:
    """One running (or starting) task of the fleet"""

    unit_id: str
    version: str
    pool: PoolId
    status: str = "running"  # running | pending


@dataclass(frozen=True)
class PoolCounts:
    running: int = 0
    pending: int = 0


@dataclass(frozen=True)
class AlarmDefinition:
    """Threshold alarm pushed to the metrics backend"""

    name: str
    metric: str  # cpu | memory
    threshold: float
    evaluation_periods: int = 1
    comparison: str = "GreaterThanThreshold"


class ComputeProvisioner(ABC):
    """Creates and terminates compute units per capacity pool"""

    @abstractmethod
    async def set_pool_counts(self, counts: Dict[PoolId, int]) -> None:
        """Converge each pool toward the given number of units"""

    @abstractmethod
    async def describe_counts(self) -> Dict[PoolId, PoolCounts]:
        """Running and pending units per pool"""

    @abstractmethod
    async def list_units(self) -> List[ComputeUnit]:
        """All live units"""

    @abstractmethod
    async def replace_units(
        self,
        unit_ids: Iterable[str],
        version: str,
        secrets: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """Terminate the given units and start replacements on version.

        Replacements land in the same pools. Returns the new unit ids.
        """

    @abstractmethod
    async def set_version(self, version: str) -> None:
        """Version used for units started by later scaling actions"""


class LoadBalancer(ABC):
    """Routing target that reports per-unit health"""

    @abstractmethod
    async def register(self, unit_ids: Iterable[str]) -> None:
        ...

    @abstractmethod
    async def deregister(self, unit_ids: Iterable[str]) -> None:
        ...

    @abstractmethod
    async def describe_health(
        self, unit_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, bool]:
        """Latest check result (True = passed) per registered unit"""


class MetricsBackend(ABC):
    """Time-series store with threshold alarms"""

    @abstractmethod
    async def publish_sample(self, sample: UtilizationSample) -> None:
        ...

    @abstractmethod
    async def define_alarms(self, alarms: List[AlarmDefinition]) -> None:
        ...

    @abstractmethod
    async def describe_alarm_states(self) -> Dict[str, str]:
        """Alarm name -> OK | ALARM | INSUFFICIENT_DATA"""
