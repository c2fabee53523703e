"""
Utilization sampling and metrics export
"""

from .metrics_sampler import MetricsSampler, UtilizationSource
from .prometheus_exporter import PrometheusExporter
from .resource_metrics import (
    PsutilUtilizationSource,
    StaticUtilizationSource,
    UtilizationReading,
    UtilizationSample,
    aggregate_readings,
)

__all__ = [
    "MetricsSampler",
    "UtilizationSource",
    "PrometheusExporter",
    "PsutilUtilizationSource",
    "StaticUtilizationSource",
    "UtilizationReading",
    "UtilizationSample",
    "aggregate_readings",
]
