"""Tests for queue health evaluation and the monitor loop."""

import logging

import fakeredis
import pytest

from conftest import wait_until
from worker_service.queue.job_queue import QueueCounts
from worker_service.queue.store import RedisStore
from worker_service.monitoring.queue_health import (
    AlertThresholds,
    HealthMonitor,
    HealthStatus,
    evaluate_queue,
    worst,
)
from worker_service.resilience.circuit_breaker import BreakerRegistry


THRESHOLDS = AlertThresholds(stalled=2, waiting=3, failed=2, delayed=3)


class TestEvaluateQueue:

    def test_quiet_queue_is_healthy(self):
        status, alerts = evaluate_queue(QueueCounts(waiting=1, active=2), 0, THRESHOLDS)
        assert status == HealthStatus.HEALTHY
        assert alerts == []

    def test_backlog_degrades(self):
        status, alerts = evaluate_queue(QueueCounts(waiting=3, delayed=5), 0, THRESHOLDS)
        assert status == HealthStatus.DEGRADED
        assert len(alerts) == 2

    def test_dead_letter_growth_is_failing(self):
        status, alerts = evaluate_queue(QueueCounts(waiting=10, failed=2), 0, THRESHOLDS)
        assert status == HealthStatus.FAILING
        assert alerts[0].startswith("2 failed jobs")

    def test_stalls_are_failing(self):
        status, _ = evaluate_queue(QueueCounts(), 2, THRESHOLDS)
        assert status == HealthStatus.FAILING

    def test_worst_picks_most_severe(self):
        assert worst(HealthStatus.DEGRADED, HealthStatus.HEALTHY) == HealthStatus.DEGRADED
        assert worst() == HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_sample_reports_backlog_alert(make_queue, store):
    queue = make_queue()
    for n in range(3):
        await queue.enqueue({"n": n})
    monitor = HealthMonitor([queue], thresholds=THRESHOLDS, store=store)

    snapshot = await monitor.sample()

    assert snapshot.status == HealthStatus.DEGRADED
    assert snapshot.store_connected is True
    assert snapshot.queues[queue.name].counts.waiting == 3
    assert snapshot.alerts == [f"{queue.name}: 3 waiting jobs (threshold 3)"]
    assert monitor.last_snapshot is snapshot
    assert snapshot.to_dict()["queues"][queue.name]["status"] == "degraded"


@pytest.mark.asyncio
async def test_stalls_counted_per_sample_from_events(make_queue, bus, clock):
    queue = make_queue(lock_duration_seconds=30)
    monitor = HealthMonitor([queue], thresholds=AlertThresholds(stalled=1), bus=bus)
    monitor.subscribe()

    await queue.enqueue({"n": 1})
    await queue.claim_next()
    clock.advance(31)
    await queue.check_stalled()

    snapshot = await monitor.run_once()
    assert snapshot.queues[queue.name].stalled_recent == 1
    assert snapshot.status == HealthStatus.FAILING
    assert monitor.event_counts[queue.name]["job.stalled"] == 1

    again = await monitor.run_once()
    assert again.queues[queue.name].stalled_recent == 0


@pytest.mark.asyncio
async def test_open_breaker_degrades_health(make_queue):
    breakers = BreakerRegistry()
    breaker = breakers.get("layout-renderer", volume_threshold=1)
    breaker.record_failure()

    monitor = HealthMonitor([make_queue()], breakers=breakers)
    snapshot = await monitor.sample()

    assert snapshot.status == HealthStatus.DEGRADED
    assert "breaker layout-renderer is open" in snapshot.alerts


@pytest.mark.asyncio
async def test_unreachable_store_is_failing():
    server = fakeredis.FakeServer()
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    down_store = RedisStore(prefix="test:down", client=client)
    server.connected = False

    monitor = HealthMonitor([], store=down_store)
    snapshot = await monitor.sample()

    assert snapshot.status == HealthStatus.FAILING
    assert "backing store unreachable" in snapshot.alerts


@pytest.mark.asyncio
async def test_clean_drops_entries_past_retention(make_queue, clock):
    queue = make_queue(remove_on_complete=False)
    await queue.enqueue({"n": 1})
    await queue.complete(await queue.claim_next(), {"ok": True})
    await queue.enqueue({"n": 2})
    await queue.fail(await queue.claim_next(), "bad input", retryable=False)

    monitor = HealthMonitor([queue], retention_seconds=60)
    assert await monitor.clean() == 0
    clock.advance(61)
    assert await monitor.clean() == 2

    counts = await queue.get_counts()
    assert (counts.completed, counts.failed) == (0, 0)


@pytest.mark.asyncio
async def test_report_logs_health_and_alerts(make_queue, caplog):
    queue = make_queue()
    for n in range(3):
        await queue.enqueue({"n": n})
    monitor = HealthMonitor([queue], thresholds=THRESHOLDS)

    with caplog.at_level(logging.INFO, logger="worker_service.monitoring.queue_health"):
        monitor.report(await monitor.sample())

    records = [r for r in caplog.records if r.name == "worker_service.monitoring.queue_health"]
    assert [r.event for r in records] == ["queue.health", "queue.alert"]
    assert records[0].state == "degraded"


@pytest.mark.asyncio
async def test_loop_samples_until_stopped(make_queue, bus):
    queue = make_queue(use_clock=False)
    monitor = HealthMonitor([queue], bus=bus, interval_seconds=0.01)

    monitor.start()
    await queue.enqueue({"n": 1})
    try:
        await wait_until(lambda: monitor.event_counts[queue.name]["job.enqueued"] == 1)
        await wait_until(lambda: monitor.last_snapshot is not None)
    finally:
        await monitor.stop()

    assert monitor.last_snapshot.status == HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_store_check_logs_loss_and_recovery_once(caplog):
    server = fakeredis.FakeServer()
    store = RedisStore(prefix="test:ping", client=fakeredis.FakeAsyncRedis(server=server, decode_responses=True))
    monitor = HealthMonitor([], store=store)
    name = "worker_service.monitoring.queue_health"

    with caplog.at_level(logging.INFO, logger=name):
        assert await monitor.check_store() is True
        server.connected = False
        assert await monitor.check_store() is False
        assert await monitor.check_store() is False
        server.connected = True
        assert await monitor.check_store() is True

    events = [r.event for r in caplog.records if r.name == name and hasattr(r, "event")]
    assert events == ["store.unreachable", "store.restored"]
    assert monitor.store_reachable is True


@pytest.mark.asyncio
async def test_store_check_runs_on_its_own_interval():
    server = fakeredis.FakeServer()
    store = RedisStore(prefix="test:ping", client=fakeredis.FakeAsyncRedis(server=server, decode_responses=True))
    monitor = HealthMonitor([], store=store, interval_seconds=60, health_check_interval_seconds=0.01)

    monitor.start()
    try:
        await wait_until(lambda: monitor.store_reachable is True)
        server.connected = False
        await wait_until(lambda: monitor.store_reachable is False)
    finally:
        await monitor.stop()
