"""Lifecycle events and the in-process channel that carries them.

Queues and circuit breakers publish; the health monitor (and tests)
subscribe. Each subscriber gets its own bounded ``asyncio.Queue`` so a slow
consumer never blocks a worker.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    JOB_ENQUEUED = "job.enqueued"
    JOB_ACTIVE = "job.active"
    JOB_COMPLETED = "job.completed"
    JOB_RETRYING = "job.retrying"
    JOB_FAILED = "job.failed"  # terminal, moved to dead-letter
    JOB_STALLED = "job.stalled"
    JOB_REMOVED = "job.removed"
    QUEUE_PAUSED = "queue.paused"
    QUEUE_RESUMED = "queue.resumed"
    BREAKER_OPENED = "breaker.opened"
    BREAKER_HALF_OPENED = "breaker.half_opened"
    BREAKER_CLOSED = "breaker.closed"


@dataclass
class QueueEvent:
    type: EventType
    queue: Optional[str] = None
    job_id: Optional[str] = None
    correlation_id: Optional[str] = None
    attempt: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["type"] = self.type.value
        return d


class EventBus:
    """Fan-out channel of lifecycle events."""

    def __init__(self, maxsize: int = 10000):
        self._maxsize = maxsize
        self._subscribers: list[asyncio.Queue] = []
        self.dropped = 0

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def publish(self, event: QueueEvent) -> None:
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                if self.dropped % 1000 == 1:
                    logger.warning(f"Event subscriber full, dropped {self.dropped} events so far")
