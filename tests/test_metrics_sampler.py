import pytest

from fleetctl.monitoring.metrics_sampler import MetricsSampler
from fleetctl.monitoring.resource_metrics import (
    StaticUtilizationSource,
    UtilizationReading,
)


class FakeClock:
    def __init__(self, start=1000.0, advance=True):
        self.now = start
        self.advance = advance

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        if self.advance:
            self.now += seconds


class BrokenSource:
    async def read(self):
        raise ConnectionError("metrics endpoint unreachable")


def make_sampler(source, clock):
    return MetricsSampler(
        source, period=60, poll_interval=20, clock=clock, sleep=clock.sleep
    )


@pytest.mark.asyncio
async def test_sample_aggregates_polls():
    clock = FakeClock()
    source = StaticUtilizationSource(
        [
            UtilizationReading(30.0, 40.0),
            UtilizationReading(60.0, 50.0),
            UtilizationReading(90.0, 60.0),
        ]
    )
    stream = make_sampler(source, clock).samples()

    sample = await anext(stream)
    await stream.aclose()

    assert sample.has_data
    assert sample.timestamp == 1060.0
    assert sample.cpu_avg == pytest.approx(60.0)
    assert sample.cpu_max == pytest.approx(90.0)
    assert sample.mem_avg == pytest.approx(50.0)
    assert sample.mem_max == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_missing_readings_are_skipped():
    clock = FakeClock()
    source = StaticUtilizationSource([UtilizationReading(50.0, 20.0), None, None])
    stream = make_sampler(source, clock).samples()

    sample = await anext(stream)
    await stream.aclose()

    assert sample.has_data
    assert sample.cpu_avg == pytest.approx(50.0)


@pytest.mark.asyncio
async def test_period_without_data():
    clock = FakeClock()
    stream = make_sampler(StaticUtilizationSource([None]), clock).samples()

    sample = await anext(stream)
    await stream.aclose()

    assert not sample.has_data
    assert sample.cpu_avg is None


@pytest.mark.asyncio
async def test_source_errors_become_missing_data():
    clock = FakeClock()
    stream = make_sampler(BrokenSource(), clock).samples()

    first = await anext(stream)
    second = await anext(stream)
    await stream.aclose()

    assert not first.has_data
    assert not second.has_data


@pytest.mark.asyncio
async def test_timestamps_strictly_increase_with_frozen_clock():
    clock = FakeClock(advance=False)
    source = StaticUtilizationSource([UtilizationReading(10.0, 10.0)])
    stream = make_sampler(source, clock).samples()

    timestamps = [(await anext(stream)).timestamp for _ in range(4)]
    await stream.aclose()

    assert all(b > a for a, b in zip(timestamps, timestamps[1:]))


def test_stream_can_only_be_consumed_once():
    clock = FakeClock()
    sampler = make_sampler(StaticUtilizationSource([None]), clock)
    sampler.samples()

    with pytest.raises(RuntimeError):
        sampler.samples()


def test_polls_per_period():
    clock = FakeClock()
    source = StaticUtilizationSource([None])

    assert make_sampler(source, clock).polls_per_period == 3
    assert MetricsSampler(source, period=5, poll_interval=30).polls_per_period == 1


def test_invalid_period():
    with pytest.raises(ValueError):
        MetricsSampler(StaticUtilizationSource([None]), period=0)
