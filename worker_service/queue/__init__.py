"""Queue module for background job processing.

Features:
- Priority queue using Redis sorted sets, FIFO among equal priorities
- Retry with capped exponential backoff
- Dead-letter list for jobs that exhausted their retries
- Stall detection for jobs whose worker died
- Idempotent enqueue via caller-chosen job ids
"""

from .errors import (
    JobError,
    ValidationError,
    DependencyError,
    CircuitOpenError,
    JobTimeoutError,
    StallError,
    FatalError,
    JobNotFoundError,
    InvalidJobStateError,
    LockLostError,
    classify_error,
)
from .events import EventBus, EventType, QueueEvent
from .models import Job, JobKind, JobOptions, JobState, QueueDefinition
from .retry import RetryPolicy
from .store import RedisStore
from .job_queue import (
    JobQueue,
    QueueCounts,
    build_queue_definitions,
    QUEUE_CONTENT,
    QUEUE_DOCUMENT,
    QUEUE_NOTIFICATION,
    QUEUE_NAMES,
)
from .worker import WorkerPool, JobContext, JobHandler

__all__ = [
    # Errors
    'JobError',
    'ValidationError',
    'DependencyError',
    'CircuitOpenError',
    'JobTimeoutError',
    'StallError',
    'FatalError',
    'JobNotFoundError',
    'InvalidJobStateError',
    'LockLostError',
    'classify_error',
    # Events
    'EventBus',
    'EventType',
    'QueueEvent',
    # Model
    'Job',
    'JobKind',
    'JobOptions',
    'JobState',
    'QueueDefinition',
    'RetryPolicy',
    # Queue
    'RedisStore',
    'JobQueue',
    'QueueCounts',
    'build_queue_definitions',
    'QUEUE_CONTENT',
    'QUEUE_DOCUMENT',
    'QUEUE_NOTIFICATION',
    'QUEUE_NAMES',
    # Workers
    'WorkerPool',
    'JobContext',
    'JobHandler',
]
