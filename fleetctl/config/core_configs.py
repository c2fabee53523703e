"""
Core configuration classes
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from .base_types import CombinePolicy


@dataclass
class ScalingConfig:
    """Fleet size bounds and target-tracking thresholds"""

    min_count: int = 1
    max_count: int = 10
    desired_count: int = 2

    cpu_scale_target: float = 60.0  # percent
    mem_scale_target: float = 70.0  # percent

    scale_out_cooldown: int = 60  # seconds
    scale_in_cooldown: int = 300  # seconds

    evaluation_window: int = 180  # seconds considered for scale-out
    scale_in_window: int = 300  # seconds of sustained low usage for scale-in
    step: int = 1

    # "average", "maximum" or a percentile such as "p90"
    statistic: str = "average"
    combine_policy: str = CombinePolicy.HIGHEST
    missing_data_breaching: bool = False
    history_size: int = 100


@dataclass
class PlacementConfig:
    """Weights and guaranteed bases for the capacity pools"""

    pool_weights: Dict[str, int] = field(
        default_factory=lambda: {"spot": 4, "on_demand": 1}
    )
    pool_bases: Dict[str, int] = field(default_factory=lambda: {"on_demand": 1})

    # Lower number is placed first; the guaranteed pool comes first
    pool_priorities: Dict[str, int] = field(
        default_factory=lambda: {"on_demand": 0, "spot": 1}
    )


@dataclass
class DeploymentSettings:
    """Defaults for rolling deployments"""

    batch_size: int = 1
    health_check_grace_period: float = 60.0  # seconds
    rollback_on_failure: bool = True
    stabilization_window: float = 60.0  # seconds
    batch_timeout: Optional[float] = None  # defaults to the grace period
    deployment_timeout: float = 1800.0  # 30 minutes
    rollback_attempts: int = 3
    batch_retries: int = 0
    history_size: int = 20


@dataclass
class HealthCheckConfig:
    """Load balancer health check interpretation"""

    healthy_threshold: int = 2
    unhealthy_threshold: int = 3
    interval: float = 30.0  # seconds between target health polls
