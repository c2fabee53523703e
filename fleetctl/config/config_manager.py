"""
Configuration management and loading utilities
"""

import json
import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import yaml

from .base_types import CombinePolicy, PoolId, ProviderKind, SampleSourceKind
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

STATISTIC_PATTERN = re.compile(r"^(average|maximum|p(\d{1,2}(\.\d+)?|100))$")


@dataclass
class Config:
    """Configuration for the fleet-capacity controller"""

    fleet_name: str = "default"

    # Core configurations
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    placement: PlacementConfig = field(default_factory=PlacementConfig)
    deployment: DeploymentSettings = field(default_factory=DeploymentSettings)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)

    # System configurations
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_version: str = "v0.1.0"

    def __post_init__(self) -> None:
        """Post-initialization validation and setup"""
        self._load_from_environment()
        self._validate_config()

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables"""
        if os.getenv("FLEETCTL_FLEET_NAME"):
            self.fleet_name = os.getenv("FLEETCTL_FLEET_NAME", self.fleet_name)

        if os.getenv("FLEETCTL_PROVIDER"):
            self.provider.kind = os.getenv("FLEETCTL_PROVIDER", self.provider.kind)

        if os.getenv("AWS_REGION"):
            self.provider.region = os.getenv("AWS_REGION", self.provider.region)

        if os.getenv("FLEETCTL_LOG_LEVEL"):
            self.logging.log_level = os.getenv(
                "FLEETCTL_LOG_LEVEL", self.logging.log_level
            )

        for env_name, attr in (
            ("FLEETCTL_MIN_COUNT", "min_count"),
            ("FLEETCTL_MAX_COUNT", "max_count"),
            ("FLEETCTL_DESIRED_COUNT", "desired_count"),
        ):
            raw = os.getenv(env_name)
            if raw:
                try:
                    setattr(self.scaling, attr, int(raw))
                except ValueError:
                    raise ValueError(f"{env_name} must be an integer, got {raw!r}")

    def _validate_config(self) -> None:
        """Validate configuration settings"""
        scaling = self.scaling
        if scaling.min_count < 0:
            raise ValueError("min_count cannot be negative")
        if scaling.min_count > scaling.max_count:
            raise ValueError("min_count cannot exceed max_count")
        if not scaling.min_count <= scaling.desired_count <= scaling.max_count:
            raise ValueError("desired_count must be within [min_count, max_count]")
        if scaling.step < 1:
            raise ValueError("Scaling step must be at least 1")

        for name in ("cpu_scale_target", "mem_scale_target"):
            value = getattr(scaling, name)
            if not 0 < value <= 100:
                raise ValueError(f"{name} must be between 0 and 100")

        for name in (
            "scale_out_cooldown",
            "scale_in_cooldown",
            "evaluation_window",
            "scale_in_window",
        ):
            if getattr(scaling, name) < 0:
                raise ValueError(f"{name} cannot be negative")

        if not STATISTIC_PATTERN.match(scaling.statistic):
            raise ValueError(f"Unsupported statistic: {scaling.statistic}")

        if scaling.combine_policy not in (CombinePolicy.HIGHEST, CombinePolicy.FIRST):
            raise ValueError(f"Unsupported combine policy: {scaling.combine_policy}")

        self._validate_placement()

        deployment = self.deployment
        if deployment.batch_size < 1:
            raise ValueError("Deployment batch size must be at least 1")
        if deployment.rollback_attempts < 1:
            raise ValueError("rollback_attempts must be at least 1")
        if deployment.batch_retries < 0:
            raise ValueError("batch_retries cannot be negative")
        if deployment.health_check_grace_period < 0:
            raise ValueError("health_check_grace_period cannot be negative")

        if self.health_check.healthy_threshold < 1:
            raise ValueError("healthy_threshold must be at least 1")
        if self.health_check.unhealthy_threshold < 1:
            raise ValueError("unhealthy_threshold must be at least 1")

        if self.monitoring.sample_period <= 0:
            raise ValueError("sample_period must be positive")
        if self.monitoring.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.monitoring.sample_source not in (
            SampleSourceKind.PSUTIL,
            SampleSourceKind.CLOUDWATCH,
        ):
            raise ValueError(
                f"Unsupported sample source: {self.monitoring.sample_source}"
            )

        if self.reconcile.reconcile_interval <= 0:
            raise ValueError("reconcile_interval must be positive")
        if self.reconcile.queue_size < 1:
            raise ValueError("queue_size must be at least 1")

        if self.provider.kind not in (ProviderKind.IN_MEMORY, ProviderKind.AWS):
            raise ValueError(f"Unsupported provider kind: {self.provider.kind}")

    def _validate_placement(self) -> None:
        placement = self.placement
        known_pools = {pool.value for pool in PoolId}

        for table_name in ("pool_weights", "pool_bases", "pool_priorities"):
            table = getattr(placement, table_name)
            unknown = set(table) - known_pools
            if unknown:
                raise ValueError(
                    f"Unknown pool(s) in {table_name}: {', '.join(sorted(unknown))}"
                )
            for pool, value in table.items():
                if table_name != "pool_priorities" and value < 0:
                    raise ValueError(f"{table_name}[{pool}] cannot be negative")

        if sum(placement.pool_bases.values()) > self.scaling.max_count:
            raise ValueError("Sum of pool bases cannot exceed max_count")

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> "Config":
        """Load configuration from file"""
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.suffix.lower() in [".yaml", ".yml"]:
                data = yaml.safe_load(f)
            elif config_path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported configuration file format: {config_path.suffix}"
                )

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create configuration from dictionary"""
        config_handler: Dict[str, Callable[[Dict], Any]] = {
            "scaling": ScalingConfig,
            "placement": PlacementConfig,
            "deployment": DeploymentSettings,
            "health_check": HealthCheckConfig,
            "monitoring": MonitoringConfig,
            "logging": LoggingConfig,
            "reconcile": ReconcileConfig,
            "provider": ProviderConfig,
        }
        scalar_keys = {"fleet_name", "api_host", "api_port", "api_version"}

        config_data: Dict[str, Any] = {}
        for key, value in data.items():
            if key in config_handler:
                if not isinstance(value, dict):
                    raise ValueError(f"Section '{key}' must be a mapping")
                config_data[key] = cls._build_section(key, config_handler[key], value)
            elif key in scalar_keys:
                config_data[key] = value
            else:
                raise ValueError(f"Unknown configuration key: {key}")

        return cls(**config_data)

    @staticmethod
    def _build_section(name: str, section_cls: Callable[..., Any], value: Dict) -> Any:
        try:
            return section_cls(**value)
        except TypeError as e:
            raise ValueError(f"Invalid '{name}' section: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    def to_file(self, config_path: Union[str, Path], format: str = "yaml") -> None:
        """Save configuration to file"""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.to_dict()

        with open(config_path, "w", encoding="utf-8") as f:
            if format.lower() in ["yaml", "yml"]:
                yaml.dump(data, f, default_flow_style=False, indent=2)
            elif format.lower() == "json":
                json.dump(data, f, indent=2, default=str)
            else:
                raise ValueError(f"Unsupported format: {format}")

    def __str__(self) -> str:
        return (
            f"Config(fleet={self.fleet_name}, "
            f"count={self.scaling.min_count}..{self.scaling.max_count}, "
            f"provider={self.provider.kind})"
        )

    def __repr__(self) -> str:
        return self.__str__()


# Global configuration instance
_global_config: Optional[Config] = None


def load_config(config_path: Optional[Union[str, Path]] = None) -> Config:
    """Load configuration from file or create default"""
    if config_path:
        return Config.from_file(config_path)

    env_path = os.getenv("FLEETCTL_CONFIG")
    if env_path:
        return Config.from_file(env_path)

    default_paths = ["fleetctl.yaml", "fleetctl.yml", "config.yaml", "config.yml"]

    for path in default_paths:
        if Path(path).exists():
            return Config.from_file(path)

    return Config()


def create_sample_config(output_path: Union[str, Path] = "fleetctl.yaml") -> Path:
    """Create a sample configuration file"""
    config = Config()
    config.to_file(output_path, "yaml")
    return Path(output_path)


def get_config() -> Config:
    """Get global configuration instance"""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def set_config(config: Optional[Config]) -> None:
    """Set global configuration instance"""
    global _global_config
    _global_config = config
