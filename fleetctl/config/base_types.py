"""
Base types and enums for configuration system
"""

from enum import Enum


class PoolId(str, Enum):
    """Capacity pools a fleet can be placed on"""

    SPOT = "spot"
    ON_DEMAND = "on_demand"


class ScaleDirection(str, Enum):
    """Direction of a scaling decision"""

    SCALE_OUT = "scale_out"
    SCALE_IN = "scale_in"
    HOLD = "hold"


class CombinePolicy:
    """How per-metric scaling proposals are merged"""

    HIGHEST = "highest"
    FIRST = "first"


class ProviderKind:
    """Compute/load-balancer backends"""

    IN_MEMORY = "in_memory"
    AWS = "aws"


class SampleSourceKind:
    """Utilization sources for the metrics sampler"""

    PSUTIL = "psutil"
    CLOUDWATCH = "cloudwatch"
