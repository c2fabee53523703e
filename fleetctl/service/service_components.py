"""
Service components management
Builds the providers, sampler and controller for a configuration
"""

from typing import Optional

from fleetctl.config.base_types import ProviderKind, SampleSourceKind
from fleetctl.config.config_manager import Config
from fleetctl.core.fleet_controller import FleetController
from fleetctl.monitoring.metrics_sampler import MetricsSampler
from fleetctl.monitoring.resource_metrics import PsutilUtilizationSource
from fleetctl.providers.aws import (
    CloudWatchMetricsBackend,
    CloudWatchUtilizationSource,
    EcsProvisioner,
    ElbTargetGroup,
)
from fleetctl.providers.base import ComputeProvisioner, LoadBalancer, MetricsBackend
from fleetctl.providers.in_memory import InMemoryFleet, InMemoryMetricsBackend
from fleetctl.utils.logger import get_logger

logger = get_logger(__name__)


class ServiceComponents:
    """Manages all service components"""

    def __init__(self) -> None:
        self.provisioner: Optional[ComputeProvisioner] = None
        self.load_balancer: Optional[LoadBalancer] = None
        self.metrics_backend: Optional[MetricsBackend] = None
        self.sampler: Optional[MetricsSampler] = None
        self.controller: Optional[FleetController] = None

    def initialize_all(self, config: Config) -> FleetController:
        """Initialize all service components."""
        try:
            logger.info(
                "Initializing service components",
                fleet=config.fleet_name,
                provider=config.provider.kind,
            )

            self._initialize_providers(config)
            self._initialize_sampler(config)
            self.controller = FleetController(
                config,
                self.provisioner,
                self.load_balancer,
                metrics_backend=self.metrics_backend,
                sampler=self.sampler,
            )

            logger.info("All services initialized successfully")
            return self.controller

        except Exception as e:
            logger.error(f"Failed to initialize services: {e}")
            raise

    def _initialize_providers(self, config: Config) -> None:
        provider = config.provider

        if provider.kind == ProviderKind.AWS:
            ecs = EcsProvisioner(provider)
            self.provisioner = ecs
            self.load_balancer = ElbTargetGroup(provider, ecs)
            self.metrics_backend = CloudWatchMetricsBackend(
                provider, config.fleet_name, config.monitoring.sample_period
            )
        elif provider.kind == ProviderKind.IN_MEMORY:
            fleet = InMemoryFleet(version=provider.initial_version)
            self.provisioner = fleet
            self.load_balancer = fleet
            self.metrics_backend = InMemoryMetricsBackend()
        else:
            raise ValueError(f"Unknown provider kind: {provider.kind}")

    def _initialize_sampler(self, config: Config) -> None:
        monitoring = config.monitoring

        if monitoring.sample_source == SampleSourceKind.CLOUDWATCH:
            source = CloudWatchUtilizationSource(
                config.provider, lookback=max(300.0, monitoring.sample_period)
            )
        else:
            source = PsutilUtilizationSource()

        self.sampler = MetricsSampler(
            source,
            period=monitoring.sample_period,
            poll_interval=monitoring.poll_interval,
        )
