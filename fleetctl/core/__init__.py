"""
Scaling, placement, health gating and deployment logic
"""

from .capacity_planner import CapacityPlanner, ScalingDecision
from .deployment_orchestrator import (
    DeploymentOrchestrator,
    DeploymentPlan,
    DeploymentState,
    DeploymentStatus,
)
from .exceptions import (
    BatchHealthTimeoutError,
    DeploymentInProgressError,
    FleetControllerError,
    InvalidPlanError,
    NoSamplesError,
    ProviderError,
    RollbackFailedError,
)
from .fleet_controller import FleetController
from .fleet_state import FleetSnapshot, FleetState, PoolState
from .health_gate import BatchHealth, HealthGate, UnitHealth
from .placement_allocator import PlacementAllocator, PlacementChange

__all__ = [
    "CapacityPlanner",
    "ScalingDecision",
    "DeploymentOrchestrator",
    "DeploymentPlan",
    "DeploymentState",
    "DeploymentStatus",
    "FleetControllerError",
    "NoSamplesError",
    "InvalidPlanError",
    "DeploymentInProgressError",
    "BatchHealthTimeoutError",
    "RollbackFailedError",
    "ProviderError",
    "FleetController",
    "FleetSnapshot",
    "FleetState",
    "PoolState",
    "BatchHealth",
    "HealthGate",
    "UnitHealth",
    "PlacementAllocator",
    "PlacementChange",
]
