"""Bounded worker pool for one queue.

Each worker runs a claim -> process -> ack loop. Handler errors are
classified and turned into ``fail()`` calls; they never stop the loop.
"""

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from worker_service.lib.json_logger import StructuredLoggerAdapter, job_logger
from .errors import JobError, JobTimeoutError, LockLostError, classify_error
from .job_queue import JobQueue
from .models import Job, JobKind

logger = logging.getLogger(__name__)

# Pause after an unexpected store error before the worker claims again
ERROR_BACKOFF_SECONDS = 5.0


@dataclass
class JobContext:
    """What a handler gets besides the job itself."""
    queue: JobQueue
    job: Job
    log: StructuredLoggerAdapter

    async def progress(self, value: int) -> None:
        """
        Record progress (0-100); doubles as a heartbeat.

        Raises:
            LockLostError: If the job was recovered by the stall check meanwhile
        """
        if not await self.queue.heartbeat(self.job, value):
            raise LockLostError(f"Job {self.job.id} is no longer owned by this worker")


class JobHandler(Protocol):
    """Processes jobs of one kind."""

    kind: JobKind

    async def process(self, job: Job, ctx: JobContext) -> Optional[dict[str, Any]]:
        ...


class WorkerPool:
    """Runs ``concurrency`` workers plus delayed-promotion and stall-check loops."""

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: Optional[int] = None,
        worker_prefix: Optional[str] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.definition = queue.definition
        self.concurrency = concurrency or self.definition.concurrency
        self.worker_prefix = worker_prefix or f"{socket.gethostname()}:{os.getpid()}"
        self._tasks: list[asyncio.Task] = []
        self._active: dict[str, Job] = {}
        self._claiming = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = False
        self._paused = False
        self.processed = 0

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def active_jobs(self) -> list[Job]:
        return list(self._active.values())

    @property
    def is_running(self) -> bool:
        return self._running

    # ==================== Lifecycle ====================

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._paused = False
        for index in range(self.concurrency):
            self._tasks.append(asyncio.create_task(
                self._work_loop(f"{self.worker_prefix}:{self.queue.name}:{index}"),
                name=f"worker-{self.queue.name}-{index}",
            ))
        self._tasks.append(asyncio.create_task(self._promote_loop(), name=f"promote-{self.queue.name}"))
        self._tasks.append(asyncio.create_task(self._stall_loop(), name=f"stall-{self.queue.name}"))
        logger.info(f"Started {self.concurrency} workers for {self.queue.name}")

    async def pause(self) -> None:
        """Stop claiming; jobs already running keep going."""
        self._paused = True
        await self.queue.pause()

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight claims and jobs to finish.

        Returns:
            True if no job is active anymore, False if the timeout elapsed first
        """
        if not self._active and not self._claiming:
            return True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"{self.active_count} jobs still active in {self.queue.name} after {timeout}s")
            return False

    async def stop(self) -> None:
        """Cancel every loop. Jobs still active are abandoned to stall recovery."""
        self._running = False
        abandoned = list(self._active)
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if abandoned:
            logger.warning(
                f"Abandoned {len(abandoned)} active jobs in {self.queue.name}: {', '.join(abandoned)}"
            )
        self._active.clear()
        self._idle.set()
        logger.info(f"Worker pool for {self.queue.name} stopped ({self.processed} jobs processed)")

    # ==================== Loops ====================

    async def _work_loop(self, worker_id: str) -> None:
        while self._running:
            try:
                if self._paused:
                    await asyncio.sleep(self.definition.poll_interval_seconds)
                    continue

                job = await self._claim(worker_id)
                if job is None:
                    await asyncio.sleep(self.definition.poll_interval_seconds)
                    continue

                await self._process(job)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Worker {worker_id} error: {e}")
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def _claim(self, worker_id: str) -> Optional[Job]:
        # A claim that passed the pause check counts as in flight until its job is active.
        self._claiming += 1
        self._idle.clear()
        try:
            job = await self.queue.claim_next(worker_id)
            if job is not None:
                self._active[job.id] = job
            return job
        finally:
            self._claiming -= 1
            self._set_idle_if_quiet()

    def _set_idle_if_quiet(self) -> None:
        if not self._active and not self._claiming:
            self._idle.set()

    async def _process(self, job: Job) -> None:
        self._active[job.id] = job
        self._idle.clear()
        log = job_logger(job, __name__)
        ctx = JobContext(queue=self.queue, job=job, log=log)
        renew = asyncio.create_task(self._renew_lock(job, log))
        started = time.monotonic()

        try:
            try:
                result = await asyncio.wait_for(
                    self.handler.process(job, ctx),
                    timeout=self.definition.timeout_seconds,
                )
            except asyncio.TimeoutError:
                await self._fail(job, JobTimeoutError(
                    f"Job exceeded its {self.definition.timeout_seconds:.0f}s processing budget"
                ), log)
            except asyncio.CancelledError:
                raise
            except LockLostError as e:
                log.warning(f"Abandoning job {job.id}: {e}")
            except Exception as e:
                await self._fail(job, e, log)
            else:
                await self.queue.complete(job, result)
        finally:
            renew.cancel()
            try:
                await renew
            except asyncio.CancelledError:
                pass
            self._active.pop(job.id, None)
            self._set_idle_if_quiet()
            self.processed += 1
            log.debug(
                f"Job {job.id} finished in state {job.state.value}",
                extra={"duration_ms": int((time.monotonic() - started) * 1000)},
            )

    async def _fail(self, job: Job, error: BaseException, log: StructuredLoggerAdapter) -> None:
        retryable, code, retry_after = classify_error(error)
        log.warning(
            f"Job {job.id} handler error ({code}): {error}",
            extra={"error_code": code},
            exc_info=not isinstance(error, JobError),
        )
        await self.queue.fail(job, error, retryable=retryable, retry_after=retry_after, error_code=code)

    async def _renew_lock(self, job: Job, log: StructuredLoggerAdapter) -> None:
        while True:
            await asyncio.sleep(self.definition.lock_renew_seconds)
            try:
                if not await self.queue.heartbeat(job):
                    log.warning(f"Lost lock on job {job.id}; another worker may pick it up")
                    return
            except Exception as e:
                log.warning(f"Lock renewal for job {job.id} failed: {e}")

    async def _promote_loop(self) -> None:
        while self._running:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Delayed promotion failed for {self.queue.name}: {e}")
            try:
                await asyncio.sleep(self.definition.promote_interval_seconds)
            except asyncio.CancelledError:
                break

    async def _stall_loop(self) -> None:
        # Runs once at startup so jobs abandoned by a previous process come back quickly.
        while self._running:
            try:
                await self.queue.check_stalled()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Stall check failed for {self.queue.name}: {e}")
            try:
                await asyncio.sleep(self.definition.stalled_interval_seconds)
            except asyncio.CancelledError:
                break
