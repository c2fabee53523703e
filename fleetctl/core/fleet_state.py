"""
Fleet state owned by the reconciliation loop, and the immutable snapshots
handed to everyone else.
"""

import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from fleetctl.config.base_types import PoolId
from fleetctl.config.core_configs import PlacementConfig, ScalingConfig


@dataclass
class PoolState:
    """Capacity pool with its weight, guaranteed base and current size"""

    id: PoolId
    weight: int = 0
    base: int = 0
    priority: int = 0
    current_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.value,
            "weight": self.weight,
            "base": self.base,
            "priority": self.priority,
            "current_count": self.current_count,
        }


@dataclass(frozen=True)
class PoolSnapshot:
    id: PoolId
    weight: int
    base: int
    priority: int
    current_count: int
    running_count: int = 0
    pending_count: int = 0


@dataclass(frozen=True)
class FleetSnapshot:
    """Read-only view of the fleet at a point in time"""

    fleet_name: str
    desired_count: int
    running_count: int
    pending_count: int
    min_count: int
    max_count: int
    current_version: Optional[str]
    pools: Mapping[PoolId, PoolSnapshot]
    active_deployment_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fleet_name": self.fleet_name,
            "desired_count": self.desired_count,
            "running_count": self.running_count,
            "pending_count": self.pending_count,
            "min_count": self.min_count,
            "max_count": self.max_count,
            "current_version": self.current_version,
            "active_deployment_id": self.active_deployment_id,
            "pools": {
                pool.id.value: {
                    "weight": pool.weight,
                    "base": pool.base,
                    "priority": pool.priority,
                    "current_count": pool.current_count,
                    "running_count": pool.running_count,
                    "pending_count": pool.pending_count,
                }
                for pool in self.pools.values()
            },
            "timestamp": self.timestamp,
        }


@dataclass
class FleetState:
    """Mutable fleet state. Only the reconciliation loop writes to it."""

    fleet_name: str
    min_count: int
    max_count: int
    desired_count: int
    running_count: int = 0
    pending_count: int = 0
    current_version: Optional[str] = None
    pools: Dict[PoolId, PoolState] = field(default_factory=dict)
    pool_running: Dict[PoolId, int] = field(default_factory=dict)
    pool_pending: Dict[PoolId, int] = field(default_factory=dict)

    @classmethod
    def from_config(
        cls,
        fleet_name: str,
        scaling: ScalingConfig,
        placement: PlacementConfig,
        current_version: Optional[str] = None,
    ) -> "FleetState":
        pools = {}
        for pool_id in PoolId:
            key = pool_id.value
            pools[pool_id] = PoolState(
                id=pool_id,
                weight=placement.pool_weights.get(key, 0),
                base=placement.pool_bases.get(key, 0),
                priority=placement.pool_priorities.get(key, len(pools)),
            )

        return cls(
            fleet_name=fleet_name,
            min_count=scaling.min_count,
            max_count=scaling.max_count,
            desired_count=scaling.desired_count,
            current_version=current_version,
            pools=pools,
        )

    def pool_counts(self) -> Dict[PoolId, int]:
        return {pool_id: pool.current_count for pool_id, pool in self.pools.items()}

    def update_observed(
        self, running: Dict[PoolId, int], pending: Dict[PoolId, int]
    ) -> None:
        """Record counts reported by the compute provisioner"""
        self.pool_running = dict(running)
        self.pool_pending = dict(pending)
        self.running_count = sum(running.values())
        self.pending_count = sum(pending.values())

    def is_converged(self) -> bool:
        return self.running_count == self.desired_count and self.pending_count == 0

    def snapshot(self, active_deployment_id: Optional[str] = None) -> FleetSnapshot:
        pools = {
            pool_id: PoolSnapshot(
                id=pool.id,
                weight=pool.weight,
                base=pool.base,
                priority=pool.priority,
                current_count=pool.current_count,
                running_count=self.pool_running.get(pool_id, 0),
                pending_count=self.pool_pending.get(pool_id, 0),
            )
            for pool_id, pool in self.pools.items()
        }
        return FleetSnapshot(
            fleet_name=self.fleet_name,
            desired_count=self.desired_count,
            running_count=self.running_count,
            pending_count=self.pending_count,
            min_count=self.min_count,
            max_count=self.max_count,
            current_version=self.current_version,
            pools=MappingProxyType(pools),
            active_deployment_id=active_deployment_id,
        )
