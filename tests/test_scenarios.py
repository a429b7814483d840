"""End-to-end flows: enqueue, claim, handle, acknowledge."""

import pytest

from conftest import FakeLayout, FakeSender
from worker_service.config import Settings
from worker_service.handlers.content import ContentHandler
from worker_service.handlers.document import DocumentHandler
from worker_service.handlers.notification import NotificationHandler
from worker_service.handlers.payloads import Channel, ContentPayload, DocumentPayload, NotificationPayload
from worker_service.queue.errors import DependencyError
from worker_service.queue.job_queue import JobQueue, build_queue_definitions
from worker_service.queue.models import JobKind, JobState
from worker_service.queue.worker import WorkerPool
from worker_service.resilience.circuit_breaker import BreakerConfig, BreakerState, CircuitBreaker


@pytest.mark.asyncio
async def test_unsupported_content_type_fails_without_retry(make_queue, fake_collaborators):
    queue = make_queue(kind=JobKind.CONTENT, payload_model=ContentPayload)
    handler = ContentHandler(fake_collaborators.media, fake_collaborators.translator)
    pool = WorkerPool(queue, handler)

    job = await queue.enqueue({"content_id": "c-9", "type": "VIDEO", "family_id": "fam-1"})
    claimed = await queue.claim_next("w1")
    await pool._process(claimed)

    stored = await queue.get_job(job.id)
    assert stored.state == JobState.FAILED
    assert stored.attempt == stored.max_attempts
    assert stored.error_code == "validation_error"
    assert len(stored.error_history) == 1
    assert (await queue.get_stats()).get("retried") is None


@pytest.mark.asyncio
async def test_open_breaker_schedules_document_retry(make_queue, fake_collaborators, clock):
    queue = make_queue(kind=JobKind.DOCUMENT, payload_model=DocumentPayload)
    breaker = CircuitBreaker(
        "layout-renderer",
        BreakerConfig(volume_threshold=1, reset_timeout_seconds=30),
        clock=clock,
    )
    breaker.record_failure()
    assert breaker.state == BreakerState.OPEN

    layout = FakeLayout()
    handler = DocumentHandler(layout, fake_collaborators.documents, breaker)
    pool = WorkerPool(queue, handler)

    job = await queue.enqueue({"gazette_id": "gz-1", "content_ids": ["c-1"]})
    claimed = await queue.claim_next("w1")
    failed_at = clock()
    await pool._process(claimed)

    stored = await queue.get_job(job.id)
    assert layout.render_calls == 0
    assert stored.state == JobState.DELAYED
    assert stored.attempt == 1
    assert stored.error_code == "circuit_open"
    expected_delay = queue.definition.retry.get_delay(0)
    assert stored.available_at.timestamp() == pytest.approx(failed_at + expected_delay)
    assert fake_collaborators.documents.statuses == []


@pytest.mark.asyncio
async def test_notification_succeeds_when_required_channel_delivers(make_queue, fake_collaborators):
    queue = make_queue(payload_model=NotificationPayload, remove_on_complete=False)
    senders = {
        Channel.EMAIL: FakeSender(Channel.EMAIL, DependencyError("smtp timeout")),
        Channel.PUSH: FakeSender(Channel.PUSH),
    }
    pool = WorkerPool(queue, NotificationHandler(senders))

    job = await queue.enqueue({
        "type": "CONTENT_UPDATE",
        "recipient_ids": ["user-1"],
        "content": {"title": "Neues Foto", "body": "Schau mal rein"},
        "channels": ["EMAIL", "PUSH"],
        "required_channels": ["PUSH"],
    })
    claimed = await queue.claim_next("w1")
    await pool._process(claimed)

    stored = await queue.get_job(job.id)
    assert stored.state == JobState.COMPLETED
    assert stored.result["delivered"] == {"PUSH": {"accepted": 1}}
    assert stored.result["failed"] == {"EMAIL": "smtp timeout"}
    assert stored.progress == 100


@pytest.mark.asyncio
async def test_silent_worker_job_recovered_then_dead_lettered(store, bus, clock):
    definition = build_queue_definitions(Settings())[JobKind.CONTENT]
    queue = JobQueue(definition, store, payload_model=ContentPayload, bus=bus, clock=clock)
    assert definition.max_stalled_count == 2

    job = await queue.enqueue({"content_id": "c-1", "type": "TEXT", "family_id": "fam-1", "text": "Hallo"})

    for cycle in range(1, definition.max_stalled_count + 1):
        claimed = await queue.claim_next(f"crashed-worker-{cycle}")
        assert claimed.id == job.id
        clock.advance(definition.lock_duration_seconds + 1)
        outcome = await queue.check_stalled()

        assert outcome["recovered"] == [job.id]
        stored = await queue.get_job(job.id)
        assert stored.state == JobState.WAITING
        assert stored.attempt == 0
        assert stored.stalled_count == cycle

    await queue.claim_next("crashed-worker-final")
    clock.advance(definition.lock_duration_seconds + 1)
    outcome = await queue.check_stalled()

    assert outcome["dead_lettered"] == [job.id]
    stored = await queue.get_job(job.id)
    assert stored.state == JobState.FAILED
    assert [j.id for j in await queue.get_dead_letter()] == [job.id]
