"""Notification delivery over email, push and SMS.

Channels are tried one after another, each behind its own token bucket. A
failing channel does not stop the others; the job fails only when every
required channel failed.
"""

import logging
import time
from collections import deque
from typing import Any, Optional

from worker_service.config import Settings
from worker_service.queue.errors import DependencyError, ValidationError, classify_error
from worker_service.queue.models import Job, JobKind, utcnow
from worker_service.queue.worker import JobContext
from worker_service.resilience.rate_limiter import TokenBucket
from .collaborators import ChannelSender
from .payloads import Channel, NotificationPayload

logger = logging.getLogger(__name__)

LATENCY_SAMPLES = 1000


def build_rate_limiters(settings: Settings) -> dict[Channel, TokenBucket]:
    """Per-channel token buckets, refilled every minute."""
    limits = {
        Channel.EMAIL: settings.rate_limit_email_per_minute,
        Channel.PUSH: settings.rate_limit_push_per_minute,
        Channel.SMS: settings.rate_limit_sms_per_minute,
    }
    return {
        channel: TokenBucket(limit, interval_seconds=60.0, name=f"notifications.{channel.value.lower()}")
        for channel, limit in limits.items()
    }


class ChannelMetrics:
    """Delivery counters and recent latencies of one channel."""

    def __init__(self):
        self.sent = 0
        self.failed = 0
        self.latencies_ms: deque[float] = deque(maxlen=LATENCY_SAMPLES)

    def record(self, success: bool, latency_ms: float) -> None:
        if success:
            self.sent += 1
        else:
            self.failed += 1
        self.latencies_ms.append(latency_ms)

    def to_dict(self) -> dict[str, Any]:
        samples = sorted(self.latencies_ms)
        avg = sum(samples) / len(samples) if samples else 0.0
        p95 = samples[int(len(samples) * 0.95) - 1] if samples else 0.0
        return {
            "sent": self.sent,
            "failed": self.failed,
            "avg_latency_ms": round(avg, 1),
            "p95_latency_ms": round(p95, 1),
        }


class NotificationHandler:
    kind = JobKind.NOTIFICATION
    payload_model = NotificationPayload

    def __init__(
        self,
        senders: dict[Channel, ChannelSender],
        limiters: Optional[dict[Channel, TokenBucket]] = None,
    ):
        self.senders = senders
        self.limiters = limiters or {}
        self.metrics = {channel: ChannelMetrics() for channel in Channel}

    async def process(self, job: Job, ctx: JobContext) -> dict[str, Any]:
        payload = NotificationPayload.model_validate(job.payload)
        ctx.log.info(
            f"Processing {payload.type.value} notification for {len(payload.recipient_ids)} recipients "
            f"via {', '.join(c.value for c in payload.channels)}"
        )

        message = self._format(payload)
        delivered: dict[str, Any] = {}
        errors: dict[Channel, Exception] = {}

        for index, channel in enumerate(payload.channels, start=1):
            try:
                delivered[channel.value] = await self._send(channel, payload, message, job)
            except Exception as e:
                errors[channel] = e
                _, code, _ = classify_error(e)
                ctx.log.warning(f"{channel.value} delivery failed: {e}", extra={"error_code": code})
            await ctx.progress(int(index / len(payload.channels) * 100))

        required = payload.effective_required_channels
        if all(channel in errors for channel in required):
            self._raise_for(required, errors)

        if errors:
            ctx.log.info(
                f"Delivered via {', '.join(delivered)}; optional channels failed: "
                f"{', '.join(c.value for c in errors)}"
            )
        return {
            "type": payload.type.value,
            "recipients": len(payload.recipient_ids),
            "delivered": delivered,
            "failed": {channel.value: str(error) for channel, error in errors.items()},
        }

    async def _send(self, channel: Channel, payload: NotificationPayload, message: dict, job: Job) -> dict:
        sender = self.senders.get(channel)
        if sender is None:
            raise ValidationError(f"No sender configured for channel {channel.value}")

        limiter = self.limiters.get(channel)
        if limiter is not None:
            await limiter.acquire()

        started = time.monotonic()
        try:
            result = await sender.send(payload.recipient_ids, message, correlation_id=job.correlation_id)
        except Exception:
            self.metrics[channel].record(False, (time.monotonic() - started) * 1000)
            raise
        self.metrics[channel].record(True, (time.monotonic() - started) * 1000)
        return result

    @staticmethod
    def _format(payload: NotificationPayload) -> dict[str, Any]:
        content = payload.content
        if content.template_id and not content.template_version:
            raise ValidationError("Template version is required when using templates")

        metadata = {
            **content.metadata,
            "notification_type": payload.type.value,
            "timestamp": utcnow().isoformat(),
        }
        if content.template_id:
            metadata["template_id"] = content.template_id
            metadata["template_version"] = content.template_version
        return {
            "subject": content.title,
            "body": content.body,
            "priority": payload.priority.value,
            "metadata": metadata,
        }

    @staticmethod
    def _raise_for(required: list[Channel], errors: dict[Channel, Exception]) -> None:
        summary = "; ".join(f"{c.value}: {errors[c]}" for c in required)
        retryable = [c for c in required if classify_error(errors[c])[0]]
        if not retryable:
            raise ValidationError(f"All required channels rejected the notification ({summary})")
        retry_after = [classify_error(errors[c])[2] for c in retryable]
        hints = [r for r in retry_after if r is not None]
        raise DependencyError(
            f"All required channels failed ({summary})",
            retry_after=min(hints) if hints else None,
        )

    def stats(self) -> dict[str, Any]:
        return {channel.value: metrics.to_dict() for channel, metrics in self.metrics.items()}
