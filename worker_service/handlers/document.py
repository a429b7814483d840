"""Gazette generation: validate print specs, render through the breaker, upload."""

import logging
from typing import Any

from worker_service.queue.errors import DependencyError, JobError, ValidationError
from worker_service.queue.models import Job, JobKind
from worker_service.queue.worker import JobContext
from worker_service.resilience.circuit_breaker import CircuitBreaker
from .collaborators import DocumentStore, LayoutRenderer
from .payloads import (
    ColorSpace,
    DocumentPayload,
    DocumentStatus,
    MIN_BLEED_MM,
    MIN_RESOLUTION_DPI,
)

logger = logging.getLogger(__name__)

LAYOUT_BREAKER = "layout-renderer"

# Progress reported after each step
PROGRESS_VALIDATION = 10
PROGRESS_COLOR_PROFILE = 30
PROGRESS_LAYOUT = 60
PROGRESS_QA = 80
PROGRESS_UPLOAD = 100


class DocumentHandler:
    kind = JobKind.DOCUMENT
    payload_model = DocumentPayload

    def __init__(self, renderer: LayoutRenderer, documents: DocumentStore, breaker: CircuitBreaker):
        self.renderer = renderer
        self.documents = documents
        self.breaker = breaker
        self.generated = 0
        self.errors = 0

    async def process(self, job: Job, ctx: JobContext) -> dict[str, Any]:
        """
        Generate the print PDF of one gazette.

        Validation failures and rejected renders mark the gazette ``ERROR``.
        Retryable failures leave its status alone so a later attempt can
        still succeed.

        Raises:
            ValidationError: Missing content or print specs below minimum
            CircuitOpenError: The layout breaker is open (no render attempted)
            DependencyError: Render, QA or upload failed
        """
        payload = DocumentPayload.model_validate(job.payload)
        ctx.log.info(f"Starting gazette generation for {payload.gazette_id}")

        try:
            await ctx.progress(PROGRESS_VALIDATION)
            await self._validate(payload, job)

            await ctx.progress(PROGRESS_COLOR_PROFILE)
            self._validate_color_profile(payload)

            await ctx.progress(PROGRESS_LAYOUT)
            pdf = await self.breaker.call(
                self.renderer.render, payload.gazette_id, correlation_id=job.correlation_id
            )

            await ctx.progress(PROGRESS_QA)
            self._qa_check(pdf)

            await ctx.progress(PROGRESS_UPLOAD)
            pdf_url = await self.documents.upload_pdf(payload.gazette_id, pdf, correlation_id=job.correlation_id)
            await self.documents.update_status(
                payload.gazette_id,
                DocumentStatus.READY_FOR_PRINT,
                pdf_url,
                correlation_id=job.correlation_id,
            )
        except JobError as e:
            self.errors += 1
            ctx.log.error(f"Error generating gazette {payload.gazette_id}: {e}", extra={"error_code": e.code})
            if not e.retryable:
                await self._mark_error(payload, job, ctx)
            raise

        self.generated += 1
        ctx.log.info(f"Generated gazette {payload.gazette_id}: {pdf_url}")
        return {
            "gazette_id": payload.gazette_id,
            "status": DocumentStatus.READY_FOR_PRINT.value,
            "pdf_url": pdf_url,
            "size_bytes": len(pdf),
        }

    async def _validate(self, payload: DocumentPayload, job: Job) -> None:
        if not payload.content_ids:
            raise ValidationError("Gazette must contain at least one content item")
        await self.renderer.validate_layout(payload.layout.model_dump(), correlation_id=job.correlation_id)

    @staticmethod
    def _validate_color_profile(payload: DocumentPayload) -> None:
        layout = payload.layout
        if layout.color_space.upper() != ColorSpace.CMYK.value:
            raise ValidationError("CMYK color space is required for print production")
        if layout.resolution < MIN_RESOLUTION_DPI:
            raise ValidationError(f"Minimum resolution of {MIN_RESOLUTION_DPI} DPI required")
        if layout.bleed < MIN_BLEED_MM:
            raise ValidationError(f"Minimum bleed of {MIN_BLEED_MM:g}mm required")

    @staticmethod
    def _qa_check(pdf: bytes) -> None:
        if not pdf:
            raise DependencyError("Generated PDF is invalid or empty")

    async def _mark_error(self, payload: DocumentPayload, job: Job, ctx: JobContext) -> None:
        try:
            await self.documents.update_status(
                payload.gazette_id, DocumentStatus.ERROR, correlation_id=job.correlation_id
            )
        except JobError as e:
            ctx.log.error(f"Failed to update gazette error status: {e}")

    def stats(self) -> dict[str, Any]:
        return {"generated": self.generated, "errors": self.errors}
