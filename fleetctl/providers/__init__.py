"""
Compute, load balancer and metrics backend adapters
"""

from .aws import (
    CloudWatchMetricsBackend,
    CloudWatchUtilizationSource,
    EcsProvisioner,
    ElbTargetGroup,
)
from .base import (
    AlarmDefinition,
    ComputeProvisioner,
    ComputeUnit,
    LoadBalancer,
    MetricsBackend,
    PoolCounts,
)
from .in_memory import InMemoryFleet, InMemoryMetricsBackend

__all__ = [
    "AlarmDefinition",
    "ComputeProvisioner",
    "ComputeUnit",
    "LoadBalancer",
    "MetricsBackend",
    "PoolCounts",
    "InMemoryFleet",
    "InMemoryMetricsBackend",
    "EcsProvisioner",
    "ElbTargetGroup",
    "CloudWatchMetricsBackend",
    "CloudWatchUtilizationSource",
]
