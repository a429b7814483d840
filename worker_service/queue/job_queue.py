"""Redis-backed job queue.

Features:
- Priority ordering with FIFO tie-break (sorted set, lexicographic members)
- Atomic claim via optimistic WATCH/MULTI transactions
- Retry with capped exponential backoff
- Dead-letter list for jobs that exhausted their retry budget
- Lock renewal and stall detection for crashed workers
- Idempotent enqueue for caller-chosen job ids
"""

import logging
import time
import uuid
from dataclasses import dataclass, asdict
from typing import Any, Callable, Optional, Union

import pydantic
from pydantic import BaseModel
from redis.exceptions import WatchError

from worker_service.config import Settings
from .errors import (
    ValidationError,
    JobNotFoundError,
    InvalidJobStateError,
    StallError,
)
from .events import EventBus, EventType, QueueEvent
from .models import (
    Job,
    JobKind,
    JobOptions,
    JobState,
    QueueDefinition,
    from_timestamp,
    new_correlation_id,
    new_job_id,
)
from .retry import RetryPolicy
from .store import RedisStore

logger = logging.getLogger(__name__)

# Queue names
QUEUE_CONTENT = "content-processing"
QUEUE_DOCUMENT = "gazette-generation"
QUEUE_NOTIFICATION = "notifications"

QUEUE_NAMES: dict[JobKind, str] = {
    JobKind.CONTENT: QUEUE_CONTENT,
    JobKind.DOCUMENT: QUEUE_DOCUMENT,
    JobKind.NOTIFICATION: QUEUE_NOTIFICATION,
}

# Per-queue overrides of the default job options
QUEUE_OVERRIDES: dict[JobKind, dict[str, Any]] = {
    JobKind.CONTENT: {"concurrency": 3, "max_attempts": 3, "max_stalled_count": 2},
    JobKind.DOCUMENT: {"concurrency": 5, "max_attempts": 3, "timeout_seconds": 300.0},
    JobKind.NOTIFICATION: {"concurrency": 10, "max_attempts": 5},
}

# Claims give up after this many lost WATCH races; the worker polls again.
MAX_CLAIM_RACES = 16
SEQ_WIDTH = 16


def build_queue_definitions(settings: Settings) -> dict[JobKind, QueueDefinition]:
    """Build the definition of every queue from settings plus per-queue overrides."""
    definitions = {}
    for kind, name in QUEUE_NAMES.items():
        base = dict(
            name=name,
            kind=kind,
            max_attempts=settings.default_attempts,
            retry=RetryPolicy(
                base_delay_seconds=settings.backoff_base_seconds,
                max_delay_seconds=settings.backoff_max_seconds,
                jitter=settings.backoff_jitter,
            ),
            timeout_seconds=settings.job_timeout_seconds,
            lock_duration_seconds=settings.lock_duration_seconds,
            lock_renew_seconds=settings.lock_renew_seconds,
            stalled_interval_seconds=settings.stalled_interval_seconds,
            max_stalled_count=settings.max_stalled_count,
            remove_on_complete=settings.remove_on_complete,
            remove_on_fail=settings.remove_on_fail,
            poll_interval_seconds=settings.poll_interval_seconds,
            promote_interval_seconds=settings.promote_interval_seconds,
        )
        base.update(QUEUE_OVERRIDES.get(kind, {}))
        definitions[kind] = QueueDefinition(**base)
    return definitions


@dataclass
class QueueCounts:
    """Point-in-time counts of one queue."""
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
    paused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class JobQueue:
    """A named, durable queue of jobs of one kind."""

    def __init__(
        self,
        definition: QueueDefinition,
        store: RedisStore,
        payload_model: Optional[type[BaseModel]] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.definition = definition
        self.name = definition.name
        self.kind = definition.kind
        self.store = store
        self.payload_model = payload_model
        self.bus = bus or EventBus()
        self.clock = clock
        self._paused_locally = False
        self._closed = False

    # ==================== Keys ====================

    def _key(self, *parts: str) -> str:
        return self.store.key(self.name, *parts)

    def _job_key(self, job_id: str) -> str:
        return self._key("job", job_id)

    @property
    def _waiting_key(self) -> str:
        return self._key("waiting")

    @property
    def _delayed_key(self) -> str:
        return self._key("delayed")

    @property
    def _active_key(self) -> str:
        return self._key("active")

    @property
    def _completed_key(self) -> str:
        return self._key("completed")

    @property
    def _failed_key(self) -> str:
        return self._key("failed")

    @property
    def _seq_key(self) -> str:
        return self._key("seq")

    @property
    def _paused_key(self) -> str:
        return self._key("paused")

    @property
    def _stats_key(self) -> str:
        return self._key("stats")

    @staticmethod
    def _waiting_member(seq: int, job_id: str) -> str:
        # Equal priorities are popped in lexicographic member order, i.e. by seq.
        return f"{seq:0{SEQ_WIDTH}d}:{job_id}"

    @staticmethod
    def _job_id_from_member(member: str) -> str:
        return member.split(":", 1)[1]

    @property
    def _redis(self):
        return self.store.client

    # ==================== Enqueue ====================

    def validate_payload(self, payload: Union[dict, BaseModel]) -> tuple[dict, Optional[BaseModel]]:
        """
        Check a payload against the queue's payload shape.

        Returns:
            Tuple of (normalized payload dict, parsed model or None)

        Raises:
            ValidationError: If the payload does not match the shape
        """
        if self.payload_model is None:
            if isinstance(payload, BaseModel):
                return payload.model_dump(mode="json"), payload
            if not isinstance(payload, dict):
                raise ValidationError(f"Payload for {self.name} must be an object")
            return payload, None

        try:
            if isinstance(payload, self.payload_model):
                model = payload
            elif isinstance(payload, BaseModel):
                model = self.payload_model.model_validate(payload.model_dump())
            else:
                model = self.payload_model.model_validate(payload)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid payload for {self.name}: {e}") from e
        return model.model_dump(mode="json"), model

    async def enqueue(
        self,
        payload: Union[dict, BaseModel],
        options: Optional[JobOptions] = None,
    ) -> Job:
        """
        Add a job to the queue.

        Args:
            payload: Job data matching the queue's payload shape
            options: Priority, delay, max attempts, job id and correlation id

        Returns:
            The created Job, or the existing one if ``options.job_id`` is taken

        Raises:
            ValidationError: If the payload fails shape checks
        """
        options = options or JobOptions()
        data, model = self.validate_payload(payload)

        priority = options.priority
        if priority is None:
            priority = getattr(model, "queue_priority", None)
        if priority is None:
            priority = self.definition.default_priority

        now = self.clock()
        available = now + options.delay
        job = Job(
            id=options.job_id or new_job_id(),
            queue_name=self.name,
            kind=self.kind,
            payload=data,
            state=JobState.DELAYED if options.delay > 0 else JobState.WAITING,
            max_attempts=options.max_attempts or self.definition.max_attempts,
            priority=priority,
            correlation_id=options.correlation_id or new_correlation_id(),
            created_at=from_timestamp(now),
            available_at=from_timestamp(available),
        )
        job_key = self._job_key(job.id)

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(job_key)
                    existing = await pipe.get(job_key)
                    if existing:
                        await pipe.unwatch()
                        logger.info(f"Job {job.id} already exists in {self.name}, not enqueued twice")
                        return Job.model_validate_json(existing)

                    seq = await pipe.incr(self._seq_key) if job.state == JobState.WAITING else 0
                    if job.state == JobState.WAITING:
                        job.sequence = seq
                    pipe.multi()
                    pipe.set(job_key, job.model_dump_json())
                    if job.state == JobState.WAITING:
                        pipe.zadd(self._waiting_key, {self._waiting_member(seq, job.id): job.priority})
                    else:
                        pipe.zadd(self._delayed_key, {job.id: available})
                    pipe.hincrby(self._stats_key, "enqueued", 1)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        logger.info(
            f"Enqueued job {job.id} to {self.name} (priority {job.priority}, delay {options.delay:.0f}s)",
            extra={**job.log_context(), "event": EventType.JOB_ENQUEUED.value},
        )
        await self._emit(EventType.JOB_ENQUEUED, job)
        return job

    # ==================== Claim ====================

    async def is_paused(self) -> bool:
        if self._paused_locally or self._closed:
            return True
        return bool(await self._redis.exists(self._paused_key))

    async def claim_next(self, worker_id: Optional[str] = None) -> Optional[Job]:
        """
        Atomically take the next waiting job and mark it active.

        Highest priority (lowest number) first, FIFO among equal priorities.
        At most one caller, across all processes, gets a given job.

        Returns:
            The claimed Job, or None if nothing is claimable or the queue is paused
        """
        if await self.is_paused():
            return None

        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(MAX_CLAIM_RACES):
                try:
                    await pipe.watch(self._waiting_key)
                    members = await pipe.zrange(self._waiting_key, 0, 0)
                    if not members:
                        await pipe.unwatch()
                        return None

                    member = members[0]
                    job_id = self._job_id_from_member(member)
                    job_key = self._job_key(job_id)
                    await pipe.watch(job_key)
                    raw = await pipe.get(job_key)

                    if raw is None:
                        # Document vanished (cleaned or removed); drop the stale entry.
                        pipe.multi()
                        pipe.zrem(self._waiting_key, member)
                        await pipe.execute()
                        logger.warning(f"Dropped waiting entry {job_id} with no job document in {self.name}")
                        continue

                    job = Job.model_validate_json(raw)
                    if job.state != JobState.WAITING or member != self._waiting_member(job.sequence or 0, job.id):
                        # Entry left over from an earlier life of this job id.
                        pipe.multi()
                        pipe.zrem(self._waiting_key, member)
                        await pipe.execute()
                        logger.warning(f"Dropped stale waiting entry {member} in {self.name}")
                        continue

                    now = self.clock()
                    job.state = JobState.ACTIVE
                    job.sequence = None
                    job.started_at = from_timestamp(now)
                    job.lock_token = uuid.uuid4().hex
                    job.worker_id = worker_id
                    job.progress = 0

                    pipe.multi()
                    pipe.zrem(self._waiting_key, member)
                    pipe.zadd(self._active_key, {job.id: now + self.definition.lock_duration_seconds})
                    pipe.set(job_key, job.model_dump_json())
                    await pipe.execute()
                except WatchError:
                    continue

                logger.debug(f"Claimed job {job.id} from {self.name}", extra=job.log_context())
                await self._emit(EventType.JOB_ACTIVE, job, worker_id=worker_id)
                return job

        logger.debug(f"Claim on {self.name} lost {MAX_CLAIM_RACES} races, backing off")
        return None

    async def heartbeat(self, job: Job, progress: Optional[int] = None) -> bool:
        """
        Extend the claim lock of an active job and optionally record progress.

        Returns:
            False if the caller no longer owns the job
        """
        job_key = self._job_key(job.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(job_key)
                    current = await self._owned(pipe, job)
                    if current is None:
                        await pipe.unwatch()
                        return False

                    if progress is not None:
                        current.progress = max(0, min(100, int(progress)))
                        job.progress = current.progress
                    pipe.multi()
                    pipe.zadd(
                        self._active_key,
                        {job.id: self.clock() + self.definition.lock_duration_seconds},
                        xx=True,
                    )
                    pipe.set(job_key, current.model_dump_json())
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def _owned(self, pipe, job: Job) -> Optional[Job]:
        """Read the stored job if it is still active under the caller's lock token."""
        raw = await pipe.get(self._job_key(job.id))
        if raw is None:
            return None
        current = Job.model_validate_json(raw)
        if current.state != JobState.ACTIVE or current.lock_token != job.lock_token:
            return None
        return current

    # ==================== Acknowledge ====================

    async def complete(self, job: Job, result: Optional[dict] = None) -> bool:
        """
        Mark a claimed job as completed.

        Returns:
            False if the job was no longer owned by the caller (ack dropped)
        """
        job_key = self._job_key(job.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(job_key)
                    current = await self._owned(pipe, job)
                    if current is None:
                        await pipe.unwatch()
                        logger.warning(
                            f"Job {job.id} completed after losing its lock; ack dropped",
                            extra=job.log_context(),
                        )
                        return False

                    now = self.clock()
                    current.state = JobState.COMPLETED
                    current.finished_at = from_timestamp(now)
                    current.result = result
                    current.progress = 100
                    current.lock_token = None

                    pipe.multi()
                    pipe.zrem(self._active_key, job.id)
                    if self.definition.remove_on_complete:
                        pipe.delete(job_key)
                    else:
                        pipe.set(job_key, current.model_dump_json())
                        pipe.zadd(self._completed_key, {job.id: now})
                    pipe.hincrby(self._stats_key, "completed", 1)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        job.state = current.state
        job.finished_at = current.finished_at
        job.result = result
        duration_ms = None
        if current.started_at:
            duration_ms = int((current.finished_at - current.started_at).total_seconds() * 1000)
        logger.info(
            f"Job {job.id} completed",
            extra={**current.log_context(), "event": EventType.JOB_COMPLETED.value, "duration_ms": duration_ms},
        )
        await self._emit(EventType.JOB_COMPLETED, current, duration_ms=duration_ms)
        return True

    async def fail(
        self,
        job: Job,
        error: Union[str, BaseException],
        retryable: bool = True,
        retry_after: Optional[float] = None,
        error_code: Optional[str] = None,
    ) -> Optional[Job]:
        """
        Record a failed attempt.

        While attempts remain, the job is delayed by the queue's backoff
        (capped by ``retry_after`` when given) and re-queued. Otherwise, or
        when ``retryable`` is False, it is moved to the dead-letter list.

        Returns:
            The updated Job, or None if the caller no longer owned it
        """
        message = str(error) or type(error).__name__
        job_key = self._job_key(job.id)

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(job_key)
                    current = await self._owned(pipe, job)
                    if current is None:
                        await pipe.unwatch()
                        logger.warning(
                            f"Job {job.id} failed after losing its lock; failure dropped: {message}",
                            extra=job.log_context(),
                        )
                        return None

                    now = self.clock()
                    current.last_error = message
                    current.error_code = error_code
                    current.error_history.append(f"[{from_timestamp(now).isoformat()}] {message}")
                    current.lock_token = None
                    current.worker_id = None

                    pipe.multi()
                    pipe.zrem(self._active_key, job.id)
                    if retryable and current.attempt + 1 < current.max_attempts:
                        delay = self.definition.retry.get_delay(current.attempt)
                        if retry_after is not None and retry_after > 0:
                            delay = min(delay, retry_after)
                        current.attempt += 1
                        current.state = JobState.DELAYED
                        current.available_at = from_timestamp(now + delay)
                        pipe.zadd(self._delayed_key, {job.id: now + delay})
                        pipe.set(job_key, current.model_dump_json())
                        pipe.hincrby(self._stats_key, "retried", 1)
                    else:
                        delay = None
                        self._dead_letter(pipe, current, now)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        job.state = current.state
        job.attempt = current.attempt
        job.last_error = current.last_error
        job.available_at = current.available_at

        if current.state == JobState.DELAYED:
            logger.warning(
                f"Job {job.id} failed, retry {current.attempt}/{current.max_attempts} in {delay:.1f}s: {message}",
                extra={**current.log_context(), "event": EventType.JOB_RETRYING.value, "error_code": error_code},
            )
            await self._emit(EventType.JOB_RETRYING, current, delay=delay, error=message, error_code=error_code)
        else:
            self._log_dead_letter(current, message, error_code)
            await self._emit(EventType.JOB_FAILED, current, error=message, error_code=error_code)
        return current

    def _dead_letter(self, pipe, job: Job, now: float) -> None:
        """Buffer the commands that move a job to the dead-letter list."""
        job.attempt = job.max_attempts
        job.state = JobState.FAILED
        job.finished_at = from_timestamp(now)
        if self.definition.remove_on_fail:
            pipe.delete(self._job_key(job.id))
        else:
            pipe.set(self._job_key(job.id), job.model_dump_json())
            pipe.zadd(self._failed_key, {job.id: now})
        pipe.hincrby(self._stats_key, "failed", 1)

    def _log_dead_letter(self, job: Job, message: str, error_code: Optional[str]) -> None:
        logger.error(
            f"Job {job.id} moved to dead-letter after {job.attempt} attempts: {message}",
            extra={**job.log_context(), "event": EventType.JOB_FAILED.value, "error_code": error_code},
        )

    # ==================== Housekeeping ====================

    async def promote_delayed(self, limit: int = 100) -> int:
        """Move delayed jobs whose ``available_at`` has passed back to waiting."""
        now = self.clock()
        due = await self._redis.zrangebyscore(self._delayed_key, "-inf", now, start=0, num=limit)
        promoted = 0

        for job_id in due:
            job_key = self._job_key(job_id)
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(job_key, self._delayed_key)
                    score = await pipe.zscore(self._delayed_key, job_id)
                    if score is None or score > now:
                        await pipe.unwatch()
                        continue
                    raw = await pipe.get(job_key)
                    if raw is None:
                        pipe.multi()
                        pipe.zrem(self._delayed_key, job_id)
                        await pipe.execute()
                        continue

                    job = Job.model_validate_json(raw)
                    seq = await pipe.incr(self._seq_key)
                    job.state = JobState.WAITING
                    job.sequence = seq
                    pipe.multi()
                    pipe.zrem(self._delayed_key, job_id)
                    pipe.zadd(self._waiting_key, {self._waiting_member(seq, job_id): job.priority})
                    pipe.set(job_key, job.model_dump_json())
                    await pipe.execute()
                    promoted += 1
                except WatchError:
                    # Another process promoted or removed it first.
                    continue

        if promoted:
            logger.debug(f"Promoted {promoted} delayed jobs in {self.name}")
        return promoted

    async def check_stalled(self) -> dict[str, list[str]]:
        """
        Recover active jobs whose lock expired without a heartbeat.

        A stalled job goes back to waiting with ``attempt`` unchanged. Once
        it has stalled more than ``max_stalled_count`` times it is
        dead-lettered instead.

        Returns:
            Dict with ``recovered`` and ``dead_lettered`` job ids
        """
        now = self.clock()
        expired = await self._redis.zrangebyscore(self._active_key, "-inf", now)
        outcome: dict[str, list[str]] = {"recovered": [], "dead_lettered": []}

        for job_id in expired:
            job_key = self._job_key(job_id)
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(job_key, self._active_key)
                    score = await pipe.zscore(self._active_key, job_id)
                    if score is None or score > now:
                        await pipe.unwatch()
                        continue
                    raw = await pipe.get(job_key)
                    if raw is None:
                        pipe.multi()
                        pipe.zrem(self._active_key, job_id)
                        await pipe.execute()
                        continue

                    job = Job.model_validate_json(raw)
                    stall = StallError(f"Job {job_id} stalled (no lock renewal from {job.worker_id or 'unknown worker'})")
                    job.stalled_count += 1
                    job.lock_token = None
                    job.worker_id = None
                    job.last_error = str(stall)
                    job.error_code = StallError.code

                    seq = None
                    if job.stalled_count <= self.definition.max_stalled_count:
                        seq = await pipe.incr(self._seq_key)

                    pipe.multi()
                    pipe.zrem(self._active_key, job_id)
                    pipe.hincrby(self._stats_key, "stalled", 1)
                    if seq is not None:
                        job.state = JobState.WAITING
                        job.sequence = seq
                        pipe.zadd(self._waiting_key, {self._waiting_member(seq, job_id): job.priority})
                        pipe.set(job_key, job.model_dump_json())
                    else:
                        job.last_error = f"Job stalled more than allowable limit ({self.definition.max_stalled_count})"
                        job.error_history.append(f"[{from_timestamp(now).isoformat()}] {job.last_error}")
                        self._dead_letter(pipe, job, now)
                    await pipe.execute()
                except WatchError:
                    continue

            logger.warning(
                f"Job {job_id} stalled ({job.stalled_count}/{self.definition.max_stalled_count})",
                extra={**job.log_context(), "event": EventType.JOB_STALLED.value},
            )
            await self._emit(EventType.JOB_STALLED, job, stalled_count=job.stalled_count)
            if job.state == JobState.FAILED:
                outcome["dead_lettered"].append(job_id)
                self._log_dead_letter(job, job.last_error, StallError.code)
                await self._emit(EventType.JOB_FAILED, job, error=job.last_error, error_code=StallError.code)
            else:
                outcome["recovered"].append(job_id)

        return outcome

    async def clean(self, grace_seconds: float, state: JobState) -> int:
        """
        Delete completed or failed entries older than ``grace_seconds``.

        Returns:
            Number of jobs removed
        """
        if state == JobState.COMPLETED:
            set_key = self._completed_key
        elif state == JobState.FAILED:
            set_key = self._failed_key
        else:
            raise ValueError(f"Only completed or failed jobs can be cleaned, not {state.value}")

        cutoff = self.clock() - grace_seconds
        job_ids = await self._redis.zrangebyscore(set_key, "-inf", cutoff)
        if not job_ids:
            return 0

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(set_key, *job_ids)
            pipe.delete(*[self._job_key(job_id) for job_id in job_ids])
            await pipe.execute()

        logger.info(f"Cleaned {len(job_ids)} {state.value} jobs older than {grace_seconds:.0f}s from {self.name}")
        return len(job_ids)

    # ==================== Cancellation ====================

    async def remove(self, job_id: str) -> Job:
        """
        Cancel a job that has not been claimed yet.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobStateError: If the job is not waiting or delayed
        """
        job_key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(job_key, self._waiting_key, self._delayed_key)
                    raw = await pipe.get(job_key)
                    if raw is None:
                        await pipe.unwatch()
                        raise JobNotFoundError(job_id)
                    job = Job.model_validate_json(raw)

                    if job.state == JobState.WAITING:
                        pipe.multi()
                        pipe.zrem(self._waiting_key, self._waiting_member(job.sequence or 0, job_id))
                    elif job.state == JobState.DELAYED:
                        pipe.multi()
                        pipe.zrem(self._delayed_key, job_id)
                    else:
                        await pipe.unwatch()
                        raise InvalidJobStateError(job_id, job.state.value, "remove")
                    pipe.delete(job_key)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        logger.info(f"Removed job {job_id} from {self.name}", extra=job.log_context())
        await self._emit(EventType.JOB_REMOVED, job)
        return job

    # ==================== Pause / Resume ====================

    async def pause(self, local: bool = True) -> None:
        """
        Stop handing out new claims. Active jobs keep running.

        Args:
            local: Pause only this process; False pauses every process
        """
        self._paused_locally = True
        if not local:
            await self._redis.set(self._paused_key, "1")
        logger.info(f"Queue {self.name} paused ({'local' if local else 'global'})")
        await self._emit(EventType.QUEUE_PAUSED, None, local=local)

    async def resume(self, local: bool = True) -> None:
        self._paused_locally = False
        if not local:
            await self._redis.delete(self._paused_key)
        logger.info(f"Queue {self.name} resumed ({'local' if local else 'global'})")
        await self._emit(EventType.QUEUE_RESUMED, None, local=local)

    async def close(self) -> None:
        """Refuse claims for good; the store connection is owned by the caller."""
        self._closed = True
        logger.info(f"Queue {self.name} closed")

    # ==================== Queries ====================

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.get(self._job_key(job_id))
        if not raw:
            return None
        return Job.model_validate_json(raw)

    async def get_counts(self) -> QueueCounts:
        """Consistent snapshot of the queue's set sizes (single MULTI)."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zcard(self._waiting_key)
            pipe.zcard(self._active_key)
            pipe.zcard(self._delayed_key)
            pipe.zcard(self._completed_key)
            pipe.zcard(self._failed_key)
            pipe.exists(self._paused_key)
            waiting, active, delayed, completed, failed, paused = await pipe.execute()
        return QueueCounts(
            waiting=waiting,
            active=active,
            delayed=delayed,
            completed=completed,
            failed=failed,
            paused=bool(paused) or self._paused_locally,
        )

    async def get_stats(self) -> dict[str, int]:
        """Lifetime counters (enqueued, completed, retried, failed, stalled)."""
        raw = await self._redis.hgetall(self._stats_key)
        return {k: int(v) for k, v in raw.items()}

    async def get_dead_letter(self, limit: int = 100) -> list[Job]:
        """Most recently dead-lettered jobs first."""
        job_ids = await self._redis.zrevrange(self._failed_key, 0, limit - 1)
        if not job_ids:
            return []
        raws = await self._redis.mget([self._job_key(job_id) for job_id in job_ids])
        return [Job.model_validate_json(raw) for raw in raws if raw]

    # ==================== Events ====================

    async def _emit(self, event_type: EventType, job: Optional[Job], **data) -> None:
        event = QueueEvent(
            type=event_type,
            queue=self.name,
            job_id=job.id if job else None,
            correlation_id=job.correlation_id if job else None,
            attempt=job.attempt if job else None,
            data=data,
            timestamp=self.clock(),
        )
        self.bus.publish(event)
        await self.store.publish(event.to_dict())
