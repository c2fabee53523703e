"""
Prometheus metrics exporter for the fleet controller.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from .resource_metrics import UtilizationSample


class PrometheusExporter:
    """Prometheus metrics exporter"""

    def __init__(self, enabled: bool = True, namespace: str = "fleetctl"):
        self.enabled = enabled
        self.namespace = namespace

        if self.enabled:
            self.registry = CollectorRegistry()
            self._setup_metrics()

    def _setup_metrics(self):
        """Setup Prometheus metrics"""
        ns = self.namespace

        # Fleet size
        self.desired_count_gauge = Gauge(
            f"{ns}_desired_count",
            "Desired number of compute units",
            ["fleet"],
            registry=self.registry,
        )

        self.running_count_gauge = Gauge(
            f"{ns}_running_count",
            "Running compute units",
            ["fleet"],
            registry=self.registry,
        )

        self.pending_count_gauge = Gauge(
            f"{ns}_pending_count",
            "Pending compute units",
            ["fleet"],
            registry=self.registry,
        )

        self.pool_count_gauge = Gauge(
            f"{ns}_pool_count",
            "Target compute units per capacity pool",
            ["fleet", "pool"],
            registry=self.registry,
        )

        # Utilization
        self.cpu_usage_gauge = Gauge(
            f"{ns}_cpu_usage_percent",
            "Fleet CPU usage percentage (period mean)",
            ["fleet"],
            registry=self.registry,
        )

        self.memory_usage_gauge = Gauge(
            f"{ns}_memory_usage_percent",
            "Fleet memory usage percentage (period mean)",
            ["fleet"],
            registry=self.registry,
        )

        # Decisions and deployments
        self.scaling_decision_counter = Counter(
            f"{ns}_scaling_decisions_total",
            "Scaling decisions applied",
            ["fleet", "direction"],
            registry=self.registry,
        )

        self.deployment_counter = Counter(
            f"{ns}_deployments_total",
            "Finished deployments by outcome",
            ["fleet", "status"],
            registry=self.registry,
        )

        self.deployment_active_gauge = Gauge(
            f"{ns}_deployment_active",
            "1 while a deployment holds the fleet lock",
            ["fleet"],
            registry=self.registry,
        )

    def update_fleet_metrics(self, snapshot):
        """Update fleet size metrics from a FleetSnapshot"""
        if not self.enabled:
            return

        fleet = snapshot.fleet_name
        self.desired_count_gauge.labels(fleet=fleet).set(snapshot.desired_count)
        self.running_count_gauge.labels(fleet=fleet).set(snapshot.running_count)
        self.pending_count_gauge.labels(fleet=fleet).set(snapshot.pending_count)
        for pool in snapshot.pools.values():
            self.pool_count_gauge.labels(fleet=fleet, pool=pool.id.value).set(
                pool.current_count
            )
        self.deployment_active_gauge.labels(fleet=fleet).set(
            1 if snapshot.active_deployment_id else 0
        )

    def update_utilization(self, fleet: str, sample: UtilizationSample):
        if not self.enabled or not sample.has_data:
            return

        self.cpu_usage_gauge.labels(fleet=fleet).set(sample.cpu_avg)
        self.memory_usage_gauge.labels(fleet=fleet).set(sample.mem_avg)

    def record_scaling_decision(self, fleet: str, direction: str):
        if not self.enabled:
            return
        self.scaling_decision_counter.labels(fleet=fleet, direction=direction).inc()

    def record_deployment(self, fleet: str, status: str):
        if not self.enabled:
            return
        self.deployment_counter.labels(fleet=fleet, status=status).inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus format"""
        if not self.enabled:
            return ""

        return generate_latest(self.registry).decode("utf-8")
