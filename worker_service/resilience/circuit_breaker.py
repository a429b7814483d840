"""Circuit breaker for calls to unreliable collaborators.

Closed: calls pass through, outcomes are counted in a bucketed rolling window.
Open: calls are rejected with ``CircuitOpenError`` until the reset timeout passes.
Half-open: exactly one trial call is let through; success closes the
breaker, failure opens it again.

State is process-local and not persisted.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from worker_service.config import Settings
from worker_service.queue.errors import CircuitOpenError, JobError, JobTimeoutError
from worker_service.queue.events import EventBus, EventType, QueueEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerConfig:
    error_threshold_percentage: float = 50.0
    rolling_window_seconds: float = 10.0
    rolling_buckets: int = 10
    reset_timeout_seconds: float = 30.0
    call_timeout_seconds: float = 30.0
    volume_threshold: int = 5  # calls in the window before the error rate counts

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "BreakerConfig":
        values = dict(
            error_threshold_percentage=settings.breaker_error_threshold_percentage,
            rolling_window_seconds=settings.breaker_rolling_window_seconds,
            rolling_buckets=settings.breaker_rolling_buckets,
            reset_timeout_seconds=settings.breaker_reset_timeout_seconds,
            call_timeout_seconds=settings.breaker_call_timeout_seconds,
            volume_threshold=settings.breaker_volume_threshold,
        )
        values.update(overrides)
        return cls(**values)


@dataclass
class _Bucket:
    index: int
    successes: int = 0
    failures: int = 0


class CircuitBreaker:
    """Guards one dependency."""

    def __init__(
        self,
        name: str,
        config: Optional[BreakerConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self.bus = bus
        self.clock = clock
        self._state = BreakerState.CLOSED
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        # Bumped on every state change; outcomes of calls begun under an older
        # generation are counted but never move the breaker.
        self._generation = 0
        self._trial_in_flight = False
        self._buckets: deque[_Bucket] = deque()
        self._bucket_width = self.config.rolling_window_seconds / max(self.config.rolling_buckets, 1)

        # Lifetime counters
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.total_timeouts = 0

    # ==================== State ====================

    @property
    def state(self) -> BreakerState:
        """Current state; an expired open period reports as half-open."""
        if self._state == BreakerState.OPEN and self.retry_after() <= 0:
            return BreakerState.HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == BreakerState.OPEN

    def retry_after(self) -> float:
        """Seconds until a trial call is allowed; 0 unless open."""
        if self._state != BreakerState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.config.reset_timeout_seconds - self.clock())

    def _transition(self, state: BreakerState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        self._generation += 1
        self._trial_in_flight = False
        event_type = {
            BreakerState.OPEN: EventType.BREAKER_OPENED,
            BreakerState.HALF_OPEN: EventType.BREAKER_HALF_OPENED,
            BreakerState.CLOSED: EventType.BREAKER_CLOSED,
        }[state]

        log = logger.warning if state == BreakerState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.name}' {previous.value} -> {state.value}",
            extra={"event": event_type.value, "breaker": self.name},
        )
        if self.bus is not None:
            self.bus.publish(QueueEvent(
                type=event_type,
                data={"breaker": self.name, "from": previous.value, "to": state.value},
            ))

    # ==================== Rolling window ====================

    def _bucket(self) -> _Bucket:
        index = int(self.clock() // self._bucket_width)
        self._expire(index)
        if not self._buckets or self._buckets[-1].index != index:
            self._buckets.append(_Bucket(index=index))
        return self._buckets[-1]

    def _expire(self, current_index: int) -> None:
        oldest = current_index - self.config.rolling_buckets + 1
        while self._buckets and self._buckets[0].index < oldest:
            self._buckets.popleft()

    def window_stats(self) -> tuple[int, int]:
        """(successes, failures) within the rolling window."""
        self._expire(int(self.clock() // self._bucket_width))
        successes = sum(b.successes for b in self._buckets)
        failures = sum(b.failures for b in self._buckets)
        return successes, failures

    def error_percentage(self) -> float:
        successes, failures = self.window_stats()
        total = successes + failures
        return (failures / total * 100) if total else 0.0

    # ==================== Calls ====================

    def _before_call(self) -> None:
        if self._state == BreakerState.OPEN:
            remaining = self.retry_after()
            if remaining > 0:
                self.total_rejections += 1
                raise CircuitOpenError(self.name, retry_after=remaining)
            self._transition(BreakerState.HALF_OPEN)

        if self._state == BreakerState.HALF_OPEN:
            if self._trial_in_flight:
                self.total_rejections += 1
                raise CircuitOpenError(self.name, retry_after=None)
            self._trial_in_flight = True

    def _is_stale(self, generation: Optional[int]) -> bool:
        return generation is not None and generation != self._generation

    def record_success(self, generation: Optional[int] = None) -> None:
        self._bucket().successes += 1
        if self._is_stale(generation):
            return
        if self._state == BreakerState.HALF_OPEN:
            self._buckets.clear()
            self._opened_at = None
            self._transition(BreakerState.CLOSED)

    def record_failure(self, generation: Optional[int] = None) -> None:
        self.total_failures += 1
        self._bucket().failures += 1
        if self._is_stale(generation):
            return

        if self._state == BreakerState.HALF_OPEN:
            self._open()
            return

        if self._state == BreakerState.CLOSED:
            successes, failures = self.window_stats()
            total = successes + failures
            if total >= self.config.volume_threshold and \
                    failures / total * 100 >= self.config.error_threshold_percentage:
                self._open()

    def _open(self) -> None:
        self._opened_at = self.clock()
        self._transition(BreakerState.OPEN)

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Invoke ``fn`` through the breaker.

        Raises:
            CircuitOpenError: If the breaker is open, or a half-open trial is in flight
            JobTimeoutError: If the call exceeded ``call_timeout_seconds``
        """
        self._before_call()
        self.total_calls += 1
        trial = self._state == BreakerState.HALF_OPEN
        generation = self._generation

        try:
            result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.config.call_timeout_seconds)
        except asyncio.TimeoutError as e:
            self.total_timeouts += 1
            self.record_failure(generation)
            raise JobTimeoutError(
                f"Call through '{self.name}' timed out after {self.config.call_timeout_seconds:.0f}s"
            ) from e
        except JobError as e:
            # Rejections by the dependency (bad input) say nothing about its health.
            if e.retryable:
                self.record_failure(generation)
            else:
                self.record_success(generation)
            raise
        except Exception:
            self.record_failure(generation)
            raise
        else:
            self.record_success(generation)
            return result
        finally:
            if trial and not self._is_stale(generation):
                self._trial_in_flight = False

    def snapshot(self) -> dict[str, Any]:
        successes, failures = self.window_stats()
        return {
            "name": self.name,
            "state": self.state.value,
            "window_successes": successes,
            "window_failures": failures,
            "error_percentage": round(self.error_percentage(), 1),
            "retry_after_seconds": round(self.retry_after(), 1),
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "total_timeouts": self.total_timeouts,
        }


class BreakerRegistry:
    """Named breakers of this process, for handlers and the health monitor."""

    def __init__(self, settings: Optional[Settings] = None, bus: Optional[EventBus] = None):
        self.settings = settings
        self.bus = bus
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str, **overrides) -> CircuitBreaker:
        """Return the breaker called ``name``, creating it on first use."""
        if name not in self._breakers:
            if self.settings is not None:
                config = BreakerConfig.from_settings(self.settings, **overrides)
            else:
                config = BreakerConfig(**overrides)
            self._breakers[name] = CircuitBreaker(name, config=config, bus=self.bus)
        return self._breakers[name]

    def all(self) -> list[CircuitBreaker]:
        return list(self._breakers.values())

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def __iter__(self):
        return iter(self._breakers.values())
