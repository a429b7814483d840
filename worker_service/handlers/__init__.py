"""Job handlers, one per job kind.

Dispatch is by ``JobKind``: each kind has exactly one payload model and one
handler, and ``build_handlers`` refuses a mapping that misses a kind.
"""

from typing import Optional

from pydantic import BaseModel

from worker_service.queue.errors import FatalError
from worker_service.queue.models import JobKind
from worker_service.queue.worker import JobHandler
from worker_service.resilience.circuit_breaker import BreakerRegistry
from worker_service.resilience.rate_limiter import TokenBucket
from .collaborators import Collaborators
from .content import ContentHandler
from .document import DocumentHandler, LAYOUT_BREAKER
from .notification import NotificationHandler
from .payloads import Channel, ContentPayload, DocumentPayload, NotificationPayload

PAYLOAD_MODELS: dict[JobKind, type[BaseModel]] = {
    JobKind.CONTENT: ContentPayload,
    JobKind.DOCUMENT: DocumentPayload,
    JobKind.NOTIFICATION: NotificationPayload,
}


def build_handlers(
    collaborators: Collaborators,
    breakers: BreakerRegistry,
    limiters: Optional[dict[Channel, TokenBucket]] = None,
) -> dict[JobKind, JobHandler]:
    """
    Create one handler per job kind.

    Raises:
        FatalError: If a job kind has no handler
    """
    handlers: dict[JobKind, JobHandler] = {
        JobKind.CONTENT: ContentHandler(collaborators.media, collaborators.translator),
        JobKind.DOCUMENT: DocumentHandler(
            collaborators.layout,
            collaborators.documents,
            breakers.get(LAYOUT_BREAKER),
        ),
        JobKind.NOTIFICATION: NotificationHandler(collaborators.senders, limiters),
    }
    missing = [kind.value for kind in JobKind if kind not in handlers or kind not in PAYLOAD_MODELS]
    if missing:
        raise FatalError(f"No handler registered for job kinds: {', '.join(missing)}")
    return handlers


__all__ = [
    "PAYLOAD_MODELS",
    "build_handlers",
    "Collaborators",
    "ContentHandler",
    "DocumentHandler",
    "NotificationHandler",
    "LAYOUT_BREAKER",
]
