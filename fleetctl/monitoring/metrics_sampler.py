"""
Periodic utilization sampler.

Produces one UtilizationSample per period from a polled source. The stream
is infinite and can be consumed exactly once.
"""

import asyncio
import time
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol

from fleetctl.utils.logger import get_logger

from .resource_metrics import (
    UtilizationReading,
    UtilizationSample,
    aggregate_readings,
)

logger = get_logger(__name__)


class UtilizationSource(Protocol):
    """Anything that can report current fleet utilization"""

    async def read(self) -> Optional[UtilizationReading]:
        ...


class MetricsSampler:
    """Emits a time-ordered stream of utilization samples"""

    def __init__(
        self,
        source: UtilizationSource,
        period: float = 60.0,
        poll_interval: float = 10.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if period <= 0 or poll_interval <= 0:
            raise ValueError("period and poll_interval must be positive")

        self.source = source
        self.period = period
        self.poll_interval = min(poll_interval, period)
        self._clock = clock
        self._sleep = sleep
        self._started = False
        self._emitted = 0

    @property
    def polls_per_period(self) -> int:
        return max(1, int(round(self.period / self.poll_interval)))

    def samples(self) -> AsyncIterator[UtilizationSample]:
        """Return the sample stream. Can only be called once."""
        if self._started:
            raise RuntimeError("MetricsSampler stream has already been consumed")
        self._started = True
        return self._run()

    async def _run(self) -> AsyncIterator[UtilizationSample]:
        last_timestamp = float("-inf")
        while True:
            readings: List[UtilizationReading] = []
            for _ in range(self.polls_per_period):
                reading = await self._read_once()
                if reading is not None:
                    readings.append(reading)
                await self._sleep(self.poll_interval)

            # Keep the stream strictly ordered even if the clock steps back
            timestamp = max(self._clock(), last_timestamp + 1e-6)
            last_timestamp = timestamp

            sample = aggregate_readings(readings, timestamp)
            if not sample.has_data:
                logger.warning(
                    "No utilization data for period", period=self.period
                )

            self._emitted += 1
            yield sample

    async def _read_once(self) -> Optional[UtilizationReading]:
        try:
            return await self.source.read()
        except Exception as e:
            logger.error(f"Error reading utilization source: {e}")
            return None

    def get_stats(self):
        return {
            "period": self.period,
            "poll_interval": self.poll_interval,
            "samples_emitted": self._emitted,
            "started": self._started,
        }
