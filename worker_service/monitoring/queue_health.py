"""Queue health monitoring service.

Samples every queue on a fixed interval, compares the counts with alert
thresholds and logs the result. Crossing a threshold is only ever logged;
it never stops processing.
"""

import asyncio
import json
import logging
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from worker_service.config import Settings
from worker_service.queue.events import EventBus, EventType, QueueEvent
from worker_service.queue.job_queue import JobQueue, QueueCounts
from worker_service.queue.models import JobState
from worker_service.queue.store import RedisStore
from worker_service.resilience.circuit_breaker import BreakerRegistry, BreakerState

logger = logging.getLogger(__name__)

STORE_PING_TIMEOUT_SECONDS = 5.0


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILING = "failing"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.FAILING: 2}


def worst(*statuses: HealthStatus) -> HealthStatus:
    return max(statuses, key=lambda s: _SEVERITY[s], default=HealthStatus.HEALTHY)


@dataclass
class AlertThresholds:
    stalled: int = 10
    waiting: int = 100
    failed: int = 50
    delayed: int = 200

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertThresholds":
        return cls(
            stalled=settings.alert_stalled_count,
            waiting=settings.alert_waiting_count,
            failed=settings.alert_failed_count,
            delayed=settings.alert_delayed_count,
        )


@dataclass
class QueueHealth:
    """Evaluated state of one queue."""
    name: str
    counts: QueueCounts
    stalled_recent: int
    status: HealthStatus
    alerts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "counts": self.counts.to_dict(),
            "stalled_recent": self.stalled_recent,
            "alerts": self.alerts,
        }


@dataclass
class HealthSnapshot:
    """Recomputed every interval; never persisted."""
    timestamp: float
    status: HealthStatus
    store_connected: bool
    queues: dict[str, QueueHealth]
    breakers: dict[str, dict[str, Any]]

    @property
    def alerts(self) -> list[str]:
        alerts = [f"{q.name}: {a}" for q in self.queues.values() for a in q.alerts]
        alerts += [f"breaker {name} is open" for name, b in self.breakers.items()
                   if b["state"] == BreakerState.OPEN.value]
        if not self.store_connected:
            alerts.append("backing store unreachable")
        return alerts

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "status": self.status.value,
            "store_connected": self.store_connected,
            "queues": {name: q.to_dict() for name, q in self.queues.items()},
            "breakers": self.breakers,
            "alerts": self.alerts,
        }


def evaluate_queue(counts: QueueCounts, stalled_recent: int, thresholds: AlertThresholds) -> tuple[HealthStatus, list[str]]:
    """
    Compare one queue's counts with the alert thresholds.

    Returns:
        Tuple of (status, alert reasons)
    """
    alerts = []
    status = HealthStatus.HEALTHY

    if counts.failed >= thresholds.failed:
        alerts.append(f"{counts.failed} failed jobs (threshold {thresholds.failed})")
        status = HealthStatus.FAILING
    if stalled_recent >= thresholds.stalled:
        alerts.append(f"{stalled_recent} stalled jobs since last check (threshold {thresholds.stalled})")
        status = worst(status, HealthStatus.FAILING)
    if counts.waiting >= thresholds.waiting:
        alerts.append(f"{counts.waiting} waiting jobs (threshold {thresholds.waiting})")
        status = worst(status, HealthStatus.DEGRADED)
    if counts.delayed >= thresholds.delayed:
        alerts.append(f"{counts.delayed} delayed jobs (threshold {thresholds.delayed})")
        status = worst(status, HealthStatus.DEGRADED)

    return status, alerts


class HealthMonitor:
    """Periodic sampler of queue depth and breaker state."""

    def __init__(
        self,
        queues: list[JobQueue],
        breakers: Optional[BreakerRegistry] = None,
        thresholds: Optional[AlertThresholds] = None,
        bus: Optional[EventBus] = None,
        store: Optional[RedisStore] = None,
        interval_seconds: float = 30.0,
        retention_seconds: float = 86400,
        health_check_interval_seconds: float = 15.0,
    ):
        self.queues = {q.name: q for q in queues}
        self.breakers = breakers or BreakerRegistry()
        self.thresholds = thresholds or AlertThresholds()
        self.bus = bus
        self.store = store
        self.interval_seconds = interval_seconds
        self.retention_seconds = retention_seconds
        self.health_check_interval_seconds = health_check_interval_seconds

        self.last_snapshot: Optional[HealthSnapshot] = None
        self.store_reachable: Optional[bool] = None
        self.event_counts: dict[str, Counter] = defaultdict(Counter)
        self._stalled_since_sample: Counter = Counter()
        self._subscription: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []
        self._running = False

    # ==================== Sampling ====================

    async def sample(self) -> HealthSnapshot:
        """Build a snapshot of every queue and breaker."""
        store_connected = await self.store.ping() if self.store is not None else True
        queues: dict[str, QueueHealth] = {}

        for name, queue in self.queues.items():
            stalled = self._stalled_since_sample.pop(name, 0)
            try:
                counts = await queue.get_counts()
            except Exception as e:
                logger.warning(f"Could not sample queue {name}: {e}")
                queues[name] = QueueHealth(
                    name=name,
                    counts=QueueCounts(),
                    stalled_recent=stalled,
                    status=HealthStatus.FAILING,
                    alerts=[f"counts unavailable: {e}"],
                )
                continue
            status, alerts = evaluate_queue(counts, stalled, self.thresholds)
            queues[name] = QueueHealth(name=name, counts=counts, stalled_recent=stalled, status=status, alerts=alerts)

        breakers = self.breakers.snapshot()
        status = worst(HealthStatus.HEALTHY, *(q.status for q in queues.values()))
        if any(b["state"] == BreakerState.OPEN.value for b in breakers.values()):
            status = worst(status, HealthStatus.DEGRADED)
        if not store_connected:
            status = HealthStatus.FAILING

        snapshot = HealthSnapshot(
            timestamp=time.time(),
            status=status,
            store_connected=store_connected,
            queues=queues,
            breakers=breakers,
        )
        self.last_snapshot = snapshot
        return snapshot

    def report(self, snapshot: HealthSnapshot) -> None:
        """Log the snapshot and one alert line per crossed threshold."""
        summary = {
            name: {k: v for k, v in q.counts.to_dict().items() if k != "paused"}
            for name, q in snapshot.queues.items()
        }
        logger.info(
            f"Queue health {snapshot.status.value}: {json.dumps(summary)}",
            extra={"event": "queue.health", "state": snapshot.status.value},
        )
        for alert in snapshot.alerts:
            logger.warning(f"Queue alert: {alert}", extra={"event": "queue.alert"})

    async def clean(self) -> int:
        """Drop completed/failed entries older than the retention window."""
        removed = 0
        for queue in self.queues.values():
            for state in (JobState.COMPLETED, JobState.FAILED):
                try:
                    removed += await queue.clean(self.retention_seconds, state)
                except Exception as e:
                    logger.warning(f"Cleanup of {state.value} jobs in {queue.name} failed: {e}")
        return removed

    # ==================== Events ====================

    def handle_event(self, event: QueueEvent) -> None:
        source = event.queue or event.data.get("breaker", "unknown")
        self.event_counts[source][event.type.value] += 1
        if event.type == EventType.JOB_STALLED and event.queue:
            self._stalled_since_sample[event.queue] += 1
        logger.debug(
            f"{event.type.value} {source} {event.job_id or ''}".rstrip(),
            extra={"event": event.type.value, "job_id": event.job_id, "queue": event.queue,
                   "correlation_id": event.correlation_id},
        )

    async def _consume_events(self) -> None:
        while self._running:
            try:
                event = await self._subscription.get()
            except asyncio.CancelledError:
                break
            self.handle_event(event)

    def drain_events(self) -> int:
        """Process events already queued without waiting."""
        handled = 0
        while self._subscription is not None and not self._subscription.empty():
            self.handle_event(self._subscription.get_nowait())
            handled += 1
        return handled

    # ==================== Loop ====================

    def subscribe(self) -> None:
        if self.bus is not None and self._subscription is None:
            self._subscription = self.bus.subscribe()

    async def check_store(self) -> bool:
        """Ping the backing store and log when it goes away or comes back."""
        try:
            reachable = await asyncio.wait_for(self.store.ping(), timeout=STORE_PING_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            reachable = False

        if not reachable and self.store_reachable is not False:
            logger.error(
                f"Backing store unreachable at {self.store.safe_url()}",
                extra={"event": "store.unreachable"},
            )
        elif reachable and self.store_reachable is False:
            logger.info("Backing store reachable again", extra={"event": "store.restored"})
        self.store_reachable = reachable
        return reachable

    async def _ping_loop(self) -> None:
        while self._running:
            try:
                await self.check_store()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Store health check error: {e}")
            try:
                await asyncio.sleep(self.health_check_interval_seconds)
            except asyncio.CancelledError:
                break

    async def run_once(self) -> HealthSnapshot:
        self.drain_events()
        snapshot = await self.sample()
        self.report(snapshot)
        await self.clean()
        return snapshot

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Health monitor error: {e}")
            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.subscribe()
        if self._subscription is not None:
            self._tasks.append(asyncio.create_task(self._consume_events(), name="health-events"))
        self._tasks.append(asyncio.create_task(self._loop(), name="health-monitor"))
        if self.store is not None:
            self._tasks.append(asyncio.create_task(self._ping_loop(), name="store-health"))
        logger.info(f"Health monitor started (interval {self.interval_seconds:.0f}s)")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.bus is not None and self._subscription is not None:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None
        logger.info("Health monitor stopped")
