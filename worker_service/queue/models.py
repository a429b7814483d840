"""Job data model and queue definitions."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .retry import RetryPolicy


class JobKind(str, Enum):
    """Kinds of work; each kind has one queue, one payload shape and one handler."""
    CONTENT = "content"
    DOCUMENT = "document"
    NOTIFICATION = "notification"


class JobState(str, Enum):
    """Job lifecycle states."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"  # Terminal; the job sits in the dead-letter list
    DELAYED = "delayed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class Job(BaseModel):
    """A unit of work stored in the backing store."""
    id: str
    queue_name: str
    kind: JobKind
    payload: dict[str, Any]
    state: JobState = JobState.WAITING
    attempt: int = 0
    max_attempts: int = 3
    priority: int = 0
    correlation_id: str
    created_at: datetime
    available_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    progress: int = 0
    result: Optional[dict[str, Any]] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    error_history: list[str] = []
    stalled_count: int = 0
    sequence: Optional[int] = None
    lock_token: Optional[str] = None
    worker_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def log_context(self) -> dict[str, Any]:
        """Fields attached to every log line about this job."""
        return {
            "job_id": self.id,
            "queue": self.queue_name,
            "attempt": self.attempt,
            "correlation_id": self.correlation_id,
        }


class JobOptions(BaseModel):
    """Per-enqueue overrides of the queue's default job options."""
    priority: Optional[int] = Field(default=None, ge=0)
    delay: float = Field(default=0.0, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    job_id: Optional[str] = None  # Caller-chosen id makes enqueue idempotent
    correlation_id: Optional[str] = None


def new_job_id() -> str:
    return uuid.uuid4().hex


def new_correlation_id() -> str:
    return str(uuid.uuid4())


@dataclass
class QueueDefinition:
    """Static configuration of one named queue."""
    name: str
    kind: JobKind
    concurrency: int = 1
    max_attempts: int = 5
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_seconds: float = 30.0
    default_priority: int = 0
    lock_duration_seconds: float = 30.0
    lock_renew_seconds: float = 15.0
    stalled_interval_seconds: float = 30.0
    max_stalled_count: int = 3
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    poll_interval_seconds: float = 1.0
    promote_interval_seconds: float = 1.0
