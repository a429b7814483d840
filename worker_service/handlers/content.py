"""Content processing: image optimization and text translation."""

import logging
import time
from collections import defaultdict
from typing import Any

from worker_service.queue.errors import ValidationError
from worker_service.queue.models import Job, JobKind
from worker_service.queue.worker import JobContext
from .collaborators import MediaProcessor, Translator
from .payloads import ContentPayload, ContentType

logger = logging.getLogger(__name__)

DEFAULT_WEB_QUALITY = 85
PRINT_QUALITY = 100


class ContentHandler:
    """Delegates media work to the media service and text to the translator.

    Artifacts are keyed by job id, so a re-run after a crash overwrites the
    previous output instead of creating a second copy.
    """

    kind = JobKind.CONTENT
    payload_model = ContentPayload

    def __init__(self, media: MediaProcessor, translator: Translator):
        self.media = media
        self.translator = translator
        self._counts: dict[str, dict[str, int]] = defaultdict(lambda: {"success": 0, "error": 0})
        self._duration_ms: dict[str, int] = defaultdict(int)

    async def process(self, job: Job, ctx: JobContext) -> dict[str, Any]:
        payload = ContentPayload.model_validate(job.payload)
        label = payload.type.lower()
        started = time.monotonic()
        ctx.log.info(f"Processing {payload.type} content {payload.content_id} for family {payload.family_id}")

        try:
            try:
                content_type = ContentType(payload.type.upper())
            except ValueError:
                raise ValidationError(f"Unsupported content type: {payload.type}")

            if content_type == ContentType.IMAGE:
                result = await self._process_image(job, payload, ctx)
            else:
                result = await self._process_text(job, payload, ctx)
        except Exception:
            self._counts[label]["error"] += 1
            raise
        finally:
            self._duration_ms[label] += int((time.monotonic() - started) * 1000)

        self._counts[label]["success"] += 1
        return result

    async def _process_image(self, job: Job, payload: ContentPayload, ctx: JobContext) -> dict[str, Any]:
        if not payload.url:
            raise ValidationError("Image URL is required")

        options = payload.processing_options
        web = await self.media.optimize_for_web(
            payload.url,
            options.quality or DEFAULT_WEB_QUALITY,
            key=f"{job.id}/web",
            correlation_id=job.correlation_id,
        )
        await ctx.progress(50)

        print_result = None
        if options.for_print:
            print_result = await self.media.prepare_for_print(
                payload.url,
                PRINT_QUALITY,
                options.with_bleed,
                key=f"{job.id}/print",
                correlation_id=job.correlation_id,
            )

        return {
            "content_id": payload.content_id,
            "web": web,
            "print": print_result,
        }

    async def _process_text(self, job: Job, payload: ContentPayload, ctx: JobContext) -> dict[str, Any]:
        if not payload.target_languages:
            raise ValidationError("Target languages are required for text processing")
        text = payload.text or payload.metadata.get("content")
        if not text:
            raise ValidationError("Text content is required for text processing")

        started = time.monotonic()
        translations: dict[str, str] = {}
        languages = list(dict.fromkeys(payload.target_languages))
        for index, language in enumerate(languages, start=1):
            translations[language] = await self.translator.translate(
                text,
                payload.source_language,
                language,
                correlation_id=job.correlation_id,
            )
            await ctx.progress(int(index / len(languages) * 100))

        return {
            "content_id": payload.content_id,
            "translations": translations,
            "stats": {
                "success_count": len(translations),
                "processing_ms": int((time.monotonic() - started) * 1000),
            },
        }

    def stats(self) -> dict[str, Any]:
        return {
            label: {**counts, "duration_ms_total": self._duration_ms[label]}
            for label, counts in self._counts.items()
        }
