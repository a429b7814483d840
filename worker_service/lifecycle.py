"""Process lifecycle: start queues and workers, shut down gracefully.

Run as a standalone worker with ``python -m worker_service.lifecycle``; the
HTTP service in ``main.py`` drives the same controller from its lifespan.
"""

import asyncio
import logging
import signal
import sys
import time
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from worker_service.config import Settings, get_settings
from worker_service.handlers import PAYLOAD_MODELS, build_handlers
from worker_service.handlers.collaborators import Collaborators
from worker_service.handlers.notification import build_rate_limiters
from worker_service.lib.json_logger import setup_logging
from worker_service.monitoring.queue_health import AlertThresholds, HealthMonitor
from worker_service.queue.errors import FatalError
from worker_service.queue.events import EventBus
from worker_service.queue.job_queue import JobQueue, build_queue_definitions
from worker_service.queue.models import JobKind, JobOptions
from worker_service.queue.store import RedisStore
from worker_service.queue.worker import JobHandler, WorkerPool
from worker_service.resilience.circuit_breaker import BreakerRegistry

logger = logging.getLogger(__name__)


class LifecycleController:
    """Owns the store connection, the queues, their worker pools and the monitor."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[RedisStore] = None,
        collaborators: Optional[Collaborators] = None,
        clock: Callable[[], float] = time.time,
        run_workers: bool = True,
    ):
        self.settings = settings or get_settings()
        self.store = store or RedisStore(self.settings.redis_url, self.settings.queue_prefix)
        self.bus = EventBus()
        self.breakers = BreakerRegistry(self.settings, self.bus)
        self.collaborators = collaborators
        self._owns_collaborators = collaborators is None
        self.clock = clock
        self.run_workers = run_workers

        self.queues: dict[JobKind, JobQueue] = {}
        self.handlers: dict[JobKind, JobHandler] = {}
        self.pools: dict[JobKind, WorkerPool] = {}
        self.monitor: Optional[HealthMonitor] = None
        self._started = False
        self._stopped = False
        self._shutdown_requested: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._started and not self._stopped

    # ==================== Startup ====================

    async def start(self) -> None:
        """
        Connect, create the queues, register handlers and start the workers.

        Raises:
            FatalError: If the backing store is unreachable
        """
        if self._started:
            return
        await self.store.connect()

        if self.collaborators is None:
            self.collaborators = Collaborators.from_settings(self.settings)
        self.handlers = build_handlers(
            self.collaborators,
            self.breakers,
            build_rate_limiters(self.settings),
        )

        for kind, definition in build_queue_definitions(self.settings).items():
            queue = JobQueue(
                definition,
                self.store,
                payload_model=PAYLOAD_MODELS[kind],
                bus=self.bus,
                clock=self.clock,
            )
            self.queues[kind] = queue
            if self.run_workers:
                pool = WorkerPool(queue, self.handlers[kind])
                pool.start()
                self.pools[kind] = pool

        self.monitor = HealthMonitor(
            list(self.queues.values()),
            breakers=self.breakers,
            thresholds=AlertThresholds.from_settings(self.settings),
            bus=self.bus,
            store=self.store,
            interval_seconds=self.settings.monitor_interval_seconds,
            retention_seconds=self.settings.retention_seconds,
            health_check_interval_seconds=self.settings.health_check_interval_seconds,
        )
        self.monitor.start()
        self._started = True
        logger.info(
            f"Worker service started with queues: "
            f"{', '.join(f'{q.name} (x{q.definition.concurrency})' for q in self.queues.values())}"
        )

    # ==================== Producer API ====================

    def get_queue(self, name: Union[str, JobKind]) -> JobQueue:
        """
        Look up a queue by queue name or job kind.

        Raises:
            KeyError: If no such queue exists
        """
        if isinstance(name, JobKind):
            return self.queues[name]
        for kind, queue in self.queues.items():
            if name in (queue.name, kind.value):
                return queue
        raise KeyError(name)

    async def enqueue(
        self,
        queue_name: Union[str, JobKind],
        payload: Union[dict[str, Any], BaseModel],
        options: Optional[JobOptions] = None,
    ) -> str:
        """
        Enqueue a job and return its id.

        Raises:
            KeyError: Unknown queue
            ValidationError: Payload does not match the queue's shape
        """
        job = await self.get_queue(queue_name).enqueue(payload, options)
        return job.id

    # ==================== Shutdown ====================

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Pause intake, wait for active jobs, then close everything.

        Jobs still running when ``timeout`` elapses are abandoned; the stall
        check of the next process start returns them to waiting.

        Returns:
            True if every active job finished, False if some were abandoned
        """
        if self._stopped:
            return True
        self._stopped = True
        timeout = self.settings.shutdown_timeout_seconds if timeout is None else timeout
        active = sum(pool.active_count for pool in self.pools.values())
        logger.info(f"Shutting down: pausing queues, {active} jobs in flight (timeout {timeout:.0f}s)")

        for pool in self.pools.values():
            await pool.pause()
        for kind, queue in self.queues.items():
            if kind not in self.pools:
                await queue.pause()

        results = await asyncio.gather(*(pool.drain(timeout) for pool in self.pools.values()))
        drained = all(results)

        if self.monitor is not None:
            await self.monitor.stop()
        for pool in self.pools.values():
            await pool.stop()
        for queue in self.queues.values():
            await queue.close()
        if self._owns_collaborators and self.collaborators is not None:
            await self.collaborators.aclose()
        await self.store.close()

        if drained:
            logger.info("Shutdown complete")
        else:
            logger.error("Shutdown timeout elapsed with jobs still active; they were abandoned")
        return drained

    def request_shutdown(self) -> None:
        logger.info("Shutdown signal received")
        self._shutdown_event().set()

    def _shutdown_event(self) -> asyncio.Event:
        if self._shutdown_requested is None:
            self._shutdown_requested = asyncio.Event()
        return self._shutdown_requested

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event().wait()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass


async def run_worker(settings: Optional[Settings] = None) -> int:
    """
    Run the standalone worker until a termination signal arrives.

    Returns:
        Process exit code: 0 on clean shutdown, 1 on bootstrap failure or
        when the shutdown timeout abandoned active jobs
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)
    controller = LifecycleController(settings)

    try:
        await controller.start()
    except FatalError as e:
        logger.critical(f"Worker failed to start: {e}")
        await controller.store.close()
        return 1

    controller.install_signal_handlers()
    await controller.wait_for_shutdown()
    clean = await controller.shutdown()
    return 0 if clean else 1


def main() -> None:
    sys.exit(asyncio.run(run_worker()))


if __name__ == "__main__":
    main()
