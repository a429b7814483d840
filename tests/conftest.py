"""Shared fixtures: in-process Redis, controllable clock, fake collaborators."""

import asyncio
import time
from typing import Any, Optional

import fakeredis
import pytest
import pytest_asyncio

from worker_service.handlers.collaborators import Collaborators
from worker_service.handlers.payloads import Channel, DocumentStatus
from worker_service.lib.json_logger import job_logger
from worker_service.queue.errors import DependencyError
from worker_service.queue.events import EventBus
from worker_service.queue.job_queue import JobQueue
from worker_service.queue.models import Job, JobKind, QueueDefinition
from worker_service.queue.retry import RetryPolicy
from worker_service.queue.store import RedisStore


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def store(redis_client):
    s = RedisStore(prefix="test:queue", client=redis_client)
    await s.connect()
    return s


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_queue(store, bus, clock):
    """Factory for queues on the shared fake store, driven by the fake clock."""

    def _make(kind: JobKind = JobKind.NOTIFICATION, payload_model=None, use_clock=True, **overrides) -> JobQueue:
        values = dict(
            name=f"test-{kind.value}",
            kind=kind,
            max_attempts=3,
            retry=RetryPolicy(base_delay_seconds=5.0, max_delay_seconds=60.0),
        )
        values.update(overrides)
        definition = QueueDefinition(**values)
        return JobQueue(
            definition,
            store,
            payload_model=payload_model,
            bus=bus,
            clock=clock if use_clock else time.time,
        )

    return _make


def drain_events(subscription: asyncio.Queue) -> list:
    events = []
    while not subscription.empty():
        events.append(subscription.get_nowait())
    return events


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll an (async or sync) predicate until it is truthy."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        await asyncio.sleep(interval)
    raise AssertionError("condition not met before timeout")


# ==================== Fake collaborators ====================

class FakeMedia:
    def __init__(self):
        self.calls: list[tuple] = []

    async def optimize_for_web(self, url, quality, *, key, correlation_id):
        self.calls.append(("web", url, quality, key, correlation_id))
        return {"url": f"https://cdn.example.com/{key}.webp", "quality": quality}

    async def prepare_for_print(self, url, quality, with_bleed, *, key, correlation_id):
        self.calls.append(("print", url, quality, with_bleed, key, correlation_id))
        return {"url": f"https://cdn.example.com/{key}.tiff", "quality": quality, "dpi": 300}


class FakeTranslator:
    def __init__(self, fail_for: Optional[set[str]] = None):
        self.fail_for = fail_for or set()
        self.calls: list[tuple] = []

    async def translate(self, text, source_language, target_language, *, correlation_id):
        self.calls.append((text, source_language, target_language, correlation_id))
        if target_language in self.fail_for:
            raise DependencyError(f"translation to {target_language} failed")
        return f"[{target_language}] {text}"


class FakeLayout:
    def __init__(self, pdf: bytes = b"%PDF-1.7 gazette", error: Optional[Exception] = None, delay: float = 0.0):
        self.pdf = pdf
        self.error = error
        self.delay = delay
        self.render_calls = 0
        self.validated: list[dict] = []

    async def validate_layout(self, layout, *, correlation_id):
        self.validated.append(layout)

    async def render(self, gazette_id, *, correlation_id):
        self.render_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.pdf


class FakeDocuments:
    def __init__(self):
        self.uploads: dict[str, bytes] = {}
        self.statuses: list[tuple[str, DocumentStatus, Optional[str]]] = []

    async def upload_pdf(self, gazette_id, pdf, *, correlation_id):
        self.uploads[gazette_id] = pdf
        return f"https://storage.example.com/gazettes/{gazette_id}.pdf"

    async def update_status(self, gazette_id, status, pdf_url=None, *, correlation_id):
        self.statuses.append((gazette_id, status, pdf_url))


class FakeSender:
    def __init__(self, channel: Channel, error: Optional[Exception] = None):
        self.channel = channel
        self.error = error
        self.sent: list[tuple[list[str], dict[str, Any], str]] = []

    async def send(self, recipient_ids, message, *, correlation_id):
        if self.error is not None:
            raise self.error
        self.sent.append((recipient_ids, message, correlation_id))
        return {"accepted": len(recipient_ids)}


@pytest.fixture
def fake_collaborators():
    return Collaborators(
        media=FakeMedia(),
        translator=FakeTranslator(),
        layout=FakeLayout(),
        documents=FakeDocuments(),
        senders={channel: FakeSender(channel) for channel in Channel},
    )


class RecordingContext:
    """Stands in for JobContext when a handler is called directly."""

    def __init__(self, job: Job):
        self.job = job
        self.log = job_logger(job)
        self.progress_values: list[int] = []

    async def progress(self, value: int) -> None:
        self.progress_values.append(value)
