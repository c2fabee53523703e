"""
Splits the desired task count across Spot and On-Demand capacity.

Bases are honored first (guaranteed pool first), the remainder follows the
pool weights. Rounding uses the largest-remainder method so the total always
equals the desired count.
"""

from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Dict, List, Sequence

from fleetctl.config.base_types import PoolId
from fleetctl.utils.logger import get_logger

from .fleet_state import FleetState, PoolState

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlacementChange:
    """A pool whose target count changed"""

    pool: PoolId
    previous_count: int
    new_count: int

    @property
    def delta(self) -> int:
        return self.new_count - self.previous_count


PlacementListener = Callable[[PlacementChange], None]


class PlacementAllocator:
    """Computes per-pool counts for a desired fleet size"""

    def __init__(self):
        self._listeners: List[PlacementListener] = []

    def subscribe(self, listener: PlacementListener) -> None:
        self._listeners.append(listener)

    def allocate(
        self, desired_count: int, pools: Sequence[PoolState]
    ) -> Dict[PoolId, int]:
        """Return the target count for every pool"""
        if desired_count < 0:
            raise ValueError("desired_count cannot be negative")

        ordered = sorted(pools, key=lambda p: p.priority)
        counts = {pool.id: 0 for pool in ordered}
        if not ordered:
            if desired_count:
                raise ValueError("Cannot place units without any pool")
            return counts

        total_base = sum(pool.base for pool in ordered)

        if desired_count <= total_base:
            remaining = desired_count
            for pool in ordered:
                give = min(pool.base, remaining)
                counts[pool.id] = give
                remaining -= give
            return counts

        # Pools whose weighted share would fall short of their base are
        # pinned at base, then the rest is shared by weight.
        free = [pool for pool in ordered if pool.weight > 0]
        for pool in ordered:
            if pool.weight == 0:
                counts[pool.id] = pool.base

        while True:
            remaining = desired_count - sum(counts.values())
            total_weight = sum(pool.weight for pool in free)
            if not free or total_weight == 0:
                break

            short = [
                pool
                for pool in free
                if Fraction(remaining * pool.weight, total_weight) < pool.base
            ]
            if not short:
                break
            for pool in short:
                counts[pool.id] = pool.base
                free.remove(pool)

        remaining = desired_count - sum(counts.values())
        if not free:
            # Nothing carries weight; the guaranteed pool takes the rest
            counts[ordered[0].id] += remaining
            return counts

        for pool_id, share in self._largest_remainder(remaining, free).items():
            counts[pool_id] += share

        return counts

    @staticmethod
    def _largest_remainder(total: int, pools: List[PoolState]) -> Dict[PoolId, int]:
        total_weight = sum(pool.weight for pool in pools)
        quotas = {pool.id: Fraction(total * pool.weight, total_weight) for pool in pools}
        shares = {pool_id: int(quota) for pool_id, quota in quotas.items()}

        leftover = total - sum(shares.values())
        # Stable sort keeps priority order for equal remainders
        by_remainder = sorted(
            pools, key=lambda p: quotas[p.id] - shares[p.id], reverse=True
        )
        for pool in by_remainder[:leftover]:
            shares[pool.id] += 1

        return shares

    def apply(self, fleet: FleetState, desired_count: int) -> List[PlacementChange]:
        """Write new pool counts into the fleet and emit change events"""
        counts = self.allocate(desired_count, list(fleet.pools.values()))

        changes = []
        for pool_id, new_count in counts.items():
            pool = fleet.pools[pool_id]
            if pool.current_count != new_count:
                changes.append(
                    PlacementChange(
                        pool=pool_id,
                        previous_count=pool.current_count,
                        new_count=new_count,
                    )
                )
                pool.current_count = new_count

        for change in changes:
            logger.info(
                "Placement changed",
                pool=change.pool.value,
                previous_count=change.previous_count,
                new_count=change.new_count,
            )
            for listener in self._listeners:
                try:
                    listener(change)
                except Exception as e:
                    logger.error(f"Placement listener failed: {e}")

        return changes
