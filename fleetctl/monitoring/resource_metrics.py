"""
Utilization data structures and collection utilities.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import psutil


@dataclass(frozen=True)
class UtilizationReading:
    """A single point-in-time read from a utilization source"""

    cpu_percent: float
    memory_percent: float
    request_rate: float = 0.0


@dataclass(frozen=True)
class UtilizationSample:
    """Fleet utilization aggregated over one sampling period"""

    timestamp: float
    cpu_avg: Optional[float] = None
    cpu_max: Optional[float] = None
    mem_avg: Optional[float] = None
    mem_max: Optional[float] = None
    request_rate: Optional[float] = None
    has_data: bool = True

    @classmethod
    def no_data(cls, timestamp: float) -> "UtilizationSample":
        """Distinguished sample for a period without any readings"""
        return cls(timestamp=timestamp, has_data=False)

    def value(self, metric: str, use_max: bool = False) -> Optional[float]:
        """Get the mean (or max) of "cpu" or "memory" for this period"""
        if not self.has_data:
            return None
        if metric == "cpu":
            return self.cpu_max if use_max else self.cpu_avg
        if metric == "memory":
            return self.mem_max if use_max else self.mem_avg
        raise ValueError(f"Unknown metric: {metric}")


def aggregate_readings(
    readings: Sequence[UtilizationReading], timestamp: float
) -> UtilizationSample:
    """Collapse a period's readings into mean/max values"""
    if not readings:
        return UtilizationSample.no_data(timestamp)

    cpu = [r.cpu_percent for r in readings]
    mem = [r.memory_percent for r in readings]

    return UtilizationSample(
        timestamp=timestamp,
        cpu_avg=float(np.mean(cpu)),
        cpu_max=max(cpu),
        mem_avg=float(np.mean(mem)),
        mem_max=max(mem),
        request_rate=float(np.mean([r.request_rate for r in readings])),
    )


class PsutilUtilizationSource:
    """Reads host CPU and memory usage.

    Used when the controller runs next to the workload (local development,
    single-host fleets). Request rate is not observable here and is
    reported as zero.
    """

    def __init__(self):
        # Prime the CPU counter so the first non-blocking read is meaningful
        psutil.cpu_percent(interval=None)

    async def read(self) -> Optional[UtilizationReading]:
        memory = psutil.virtual_memory()
        return UtilizationReading(
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_percent=memory.percent,
        )


class StaticUtilizationSource:
    """Replays a fixed list of readings; None entries mean no data"""

    def __init__(self, readings: List[Optional[UtilizationReading]], repeat=True):
        self._readings = list(readings)
        self._repeat = repeat
        self._index = 0

    async def read(self) -> Optional[UtilizationReading]:
        if not self._readings:
            return None
        if self._index >= len(self._readings):
            if not self._repeat:
                return None
            self._index = 0
        reading = self._readings[self._index]
        self._index += 1
        return reading
