"""
System configuration classes
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .base_types import ProviderKind, SampleSourceKind


@dataclass
class MonitoringConfig:
    """Utilization sampling and metrics export"""

    sample_period: float = 60.0  # seconds per UtilizationSample
    poll_interval: float = 10.0  # seconds between source reads within a period
    sample_source: str = SampleSourceKind.PSUTIL

    # Alarm thresholds pushed to the metrics backend
    alert_thresholds: Dict[str, float] = field(
        default_factory=lambda: {
            "cpu_percent": 85.0,
            "memory_percent": 85.0,
        }
    )

    enable_prometheus_export: bool = True
    metrics_namespace: str = "fleetctl"


@dataclass
class LoggingConfig:
    """Logging configuration"""

    log_level: str = "INFO"
    log_dir: Optional[str] = None
    max_file_size: int = 209715200  # 200MB
    backup_count: int = 10
    enable_console: bool = True
    enable_structured: bool = False  # JSON lines instead of console rendering


@dataclass
class ReconcileConfig:
    """Reconciliation loop settings"""

    reconcile_interval: float = 60.0  # seconds between planner evaluations
    queue_size: int = 256


@dataclass
class ProviderConfig:
    """Compute, load balancer and metrics backend wiring"""

    kind: str = ProviderKind.IN_MEMORY
    region: str = "us-east-1"

    # ECS
    cluster_name: Optional[str] = None
    service_name: Optional[str] = None
    task_family: Optional[str] = None
    container_name: Optional[str] = None
    capacity_providers: Dict[str, str] = field(
        default_factory=lambda: {"spot": "FARGATE_SPOT", "on_demand": "FARGATE"}
    )
    subnet_ids: List[str] = field(default_factory=list)
    security_group_ids: List[str] = field(default_factory=list)
    assign_public_ip: bool = False

    # ELBv2
    target_group_arn: Optional[str] = None
    container_port: int = 80

    # In-memory fleet
    initial_version: str = "v1"
