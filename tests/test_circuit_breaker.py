"""Tests for the circuit breaker and its registry."""

import asyncio

import pytest

from conftest import drain_events
from worker_service.config import Settings
from worker_service.queue.errors import (
    CircuitOpenError,
    DependencyError,
    JobTimeoutError,
    ValidationError,
)
from worker_service.queue.events import EventType
from worker_service.resilience.circuit_breaker import (
    BreakerConfig,
    BreakerRegistry,
    BreakerState,
    CircuitBreaker,
)


@pytest.fixture
def breaker(bus, clock):
    config = BreakerConfig(
        error_threshold_percentage=50.0,
        rolling_window_seconds=10.0,
        rolling_buckets=10,
        reset_timeout_seconds=30.0,
        call_timeout_seconds=0.1,
        volume_threshold=5,
    )
    return CircuitBreaker("layout-renderer", config=config, bus=bus, clock=clock)


async def ok():
    return "ok"


async def boom():
    raise DependencyError("renderer returned 503")


async def trip(breaker, times=5):
    for _ in range(times):
        with pytest.raises(DependencyError):
            await breaker.call(boom)


@pytest.mark.asyncio
async def test_closed_breaker_passes_calls_through(breaker):
    assert await breaker.call(ok) == "ok"
    assert breaker.state == BreakerState.CLOSED
    assert breaker.window_stats() == (1, 0)


@pytest.mark.asyncio
async def test_opens_once_volume_and_error_rate_reached(breaker):
    await trip(breaker, times=4)
    assert breaker.state == BreakerState.CLOSED

    await trip(breaker, times=1)
    assert breaker.state == BreakerState.OPEN
    assert breaker.is_open
    assert breaker.error_percentage() == 100.0


@pytest.mark.asyncio
async def test_error_rate_below_threshold_stays_closed(breaker):
    for _ in range(6):
        await breaker.call(ok)
    await trip(breaker, times=5)
    assert breaker.state == BreakerState.CLOSED


@pytest.mark.asyncio
async def test_open_breaker_rejects_without_calling(breaker, clock):
    await trip(breaker)
    clock.advance(10)

    called = []

    async def tracked():
        called.append(True)

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.call(tracked)

    assert called == []
    assert exc_info.value.retry_after == pytest.approx(20.0)
    assert exc_info.value.retryable is True
    assert breaker.total_rejections == 1


@pytest.mark.asyncio
async def test_trial_success_closes_breaker(breaker, bus, clock):
    subscription = bus.subscribe()
    await trip(breaker)
    clock.advance(30)

    assert breaker.state == BreakerState.HALF_OPEN
    assert await breaker.call(ok) == "ok"
    assert breaker.state == BreakerState.CLOSED
    assert breaker.window_stats() == (0, 0)

    types = [e.type for e in drain_events(subscription)]
    assert types == [
        EventType.BREAKER_OPENED,
        EventType.BREAKER_HALF_OPENED,
        EventType.BREAKER_CLOSED,
    ]


@pytest.mark.asyncio
async def test_trial_failure_reopens_breaker(breaker, clock):
    await trip(breaker)
    clock.advance(30)

    with pytest.raises(DependencyError):
        await breaker.call(boom)

    assert breaker.state == BreakerState.OPEN
    assert breaker.retry_after() == pytest.approx(30.0)


@pytest.mark.asyncio
async def test_only_one_trial_in_flight_while_half_open(breaker, clock):
    await trip(breaker)
    clock.advance(30)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "slow"

    trial = asyncio.create_task(breaker.call(slow))
    await asyncio.sleep(0)

    with pytest.raises(CircuitOpenError):
        await breaker.call(ok)

    release.set()
    assert await trial == "slow"
    assert breaker.state == BreakerState.CLOSED


@pytest.mark.asyncio
async def test_call_started_before_trip_cannot_close_half_open_breaker(breaker, clock):
    earlier_done = asyncio.Event()
    trial_done = asyncio.Event()

    async def earlier():
        await earlier_done.wait()
        return "earlier"

    async def trial_call():
        await trial_done.wait()
        return "trial"

    overlapping = asyncio.create_task(breaker.call(earlier))
    await asyncio.sleep(0)
    await trip(breaker)
    clock.advance(30)

    trial = asyncio.create_task(breaker.call(trial_call))
    await asyncio.sleep(0)
    earlier_done.set()
    assert await overlapping == "earlier"

    assert breaker.state == BreakerState.HALF_OPEN
    for _ in range(3):
        with pytest.raises(CircuitOpenError):
            await breaker.call(ok)

    trial_done.set()
    assert await trial == "trial"
    assert breaker.state == BreakerState.CLOSED


@pytest.mark.asyncio
async def test_call_started_before_trip_failing_late_does_not_reopen(breaker, clock):
    release = asyncio.Event()

    async def earlier():
        await release.wait()
        raise DependencyError("renderer returned 502")

    overlapping = asyncio.create_task(breaker.call(earlier))
    await asyncio.sleep(0)
    await trip(breaker)
    clock.advance(30)
    assert await breaker.call(ok) == "ok"

    release.set()
    with pytest.raises(DependencyError):
        await overlapping

    assert breaker.state == BreakerState.CLOSED
    assert breaker.window_stats() == (0, 1)


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(breaker):
    async def hang():
        await asyncio.sleep(1)

    with pytest.raises(JobTimeoutError):
        await breaker.call(hang)

    assert breaker.window_stats() == (0, 1)
    assert breaker.total_timeouts == 1


@pytest.mark.asyncio
async def test_rejected_input_does_not_count_against_dependency(breaker):
    async def bad_input():
        raise ValidationError("layout invalid")

    for _ in range(6):
        with pytest.raises(ValidationError):
            await breaker.call(bad_input)

    assert breaker.state == BreakerState.CLOSED
    assert breaker.window_stats() == (6, 0)


@pytest.mark.asyncio
async def test_failures_age_out_of_rolling_window(breaker, clock):
    await trip(breaker, times=4)
    clock.advance(11)
    await trip(breaker, times=1)

    assert breaker.state == BreakerState.CLOSED
    assert breaker.window_stats() == (0, 1)


@pytest.mark.asyncio
async def test_snapshot_reports_state(breaker):
    await trip(breaker)
    snap = breaker.snapshot()
    assert snap["name"] == "layout-renderer"
    assert snap["state"] == "open"
    assert snap["window_failures"] == 5
    assert snap["total_failures"] == 5


def test_registry_reuses_breakers_and_applies_settings():
    settings = Settings(breaker_reset_timeout_seconds=12.0, breaker_volume_threshold=3)
    registry = BreakerRegistry(settings=settings)

    first = registry.get("translator")
    assert registry.get("translator") is first
    assert first.config.reset_timeout_seconds == 12.0
    assert first.config.volume_threshold == 3

    custom = registry.get("layout-renderer", call_timeout_seconds=120.0)
    assert custom.config.call_timeout_seconds == 120.0
    assert "layout-renderer" in registry
    assert set(registry.snapshot()) == {"translator", "layout-renderer"}
