"""
Configuration package initialization
"""

from .base_types import (
    CombinePolicy,
    PoolId,
    ProviderKind,
    SampleSourceKind,
    ScaleDirection,
)
from .core_configs import (
    DeploymentSettings,
    HealthCheckConfig,
    PlacementConfig,
    ScalingConfig,
)
from .system_configs import (
    LoggingConfig,
    MonitoringConfig,
    ProviderConfig,
    ReconcileConfig,
)
from .config_manager import (
    Config,
    create_sample_config,
    get_config,
    load_config,
    set_config,
)

__all__ = [
    # Base types
    "CombinePolicy",
    "PoolId",
    "ProviderKind",
    "SampleSourceKind",
    "ScaleDirection",

    # Core configs
    "DeploymentSettings",
    "HealthCheckConfig",
    "PlacementConfig",
    "ScalingConfig",

    # System configs
    "LoggingConfig",
    "MonitoringConfig",
    "ProviderConfig",
    "ReconcileConfig",

    # Config manager
    "Config",
    "create_sample_config",
    "get_config",
    "load_config",
    "set_config",
]
