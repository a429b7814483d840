"""Collaborator interfaces used by the handlers, plus HTTP implementations.

The media, translation, layout and delivery services live outside this
worker. Handlers only see the protocols below; tests substitute fakes.
Every request carries the job's correlation id.
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from worker_service.config import Settings
from worker_service.lib.pii_redactor import PIIRedactor
from worker_service.queue.errors import DependencyError, ValidationError
from .payloads import Channel, DocumentStatus

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


# ==================== Protocols ====================

class MediaProcessor(Protocol):
    async def optimize_for_web(
        self, url: str, quality: int, *, key: str, correlation_id: str
    ) -> dict[str, Any]:
        ...

    async def prepare_for_print(
        self, url: str, quality: int, with_bleed: bool, *, key: str, correlation_id: str
    ) -> dict[str, Any]:
        ...


class Translator(Protocol):
    async def translate(
        self, text: str, source_language: str, target_language: str, *, correlation_id: str
    ) -> str:
        ...


class LayoutRenderer(Protocol):
    async def validate_layout(self, layout: dict[str, Any], *, correlation_id: str) -> None:
        ...

    async def render(self, gazette_id: str, *, correlation_id: str) -> bytes:
        ...


class DocumentStore(Protocol):
    async def upload_pdf(self, gazette_id: str, pdf: bytes, *, correlation_id: str) -> str:
        ...

    async def update_status(
        self, gazette_id: str, status: DocumentStatus, pdf_url: Optional[str] = None, *, correlation_id: str
    ) -> None:
        ...


class ChannelSender(Protocol):
    channel: Channel

    async def send(
        self, recipient_ids: list[str], message: dict[str, Any], *, correlation_id: str
    ) -> dict[str, Any]:
        ...


# ==================== HTTP implementations ====================

class ServiceClient:
    """Base for JSON-over-HTTP collaborators."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        correlation_id: str,
        json: Optional[dict[str, Any]] = None,
        content: Optional[bytes] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send a request and map failures onto the job error taxonomy.

        Raises:
            DependencyError: Transport error, timeout, 429 or 5xx
            ValidationError: Any other 4xx (the request itself was rejected)
        """
        all_headers = {CORRELATION_HEADER: correlation_id}
        if headers:
            all_headers.update(headers)

        try:
            response = await self._get_client().request(
                method, path, json=json, content=content, headers=all_headers
            )
        except httpx.TimeoutException as e:
            raise DependencyError(f"{self.service_name} timed out on {method} {path}") from e
        except httpx.HTTPError as e:
            raise DependencyError(f"{self.service_name} unreachable on {method} {path}: {e}") from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("retry-after"))
            raise DependencyError(f"{self.service_name} rate limited {method} {path}", retry_after=retry_after)
        if response.status_code >= 500:
            raise DependencyError(f"{self.service_name} returned HTTP {response.status_code} for {method} {path}")
        if response.status_code >= 400:
            detail = PIIRedactor.redact_for_logging(response.text[:200])
            raise ValidationError(
                f"{self.service_name} rejected {method} {path} with HTTP {response.status_code}: {detail}"
            )
        return response


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class HttpMediaProcessor(ServiceClient):
    service_name = "media service"

    async def optimize_for_web(self, url, quality, *, key, correlation_id):
        response = await self._request(
            "POST", "/media/optimize", correlation_id,
            json={"url": url, "quality": quality, "key": key},
        )
        return response.json()

    async def prepare_for_print(self, url, quality, with_bleed, *, key, correlation_id):
        response = await self._request(
            "POST", "/media/print", correlation_id,
            json={"url": url, "quality": quality, "with_bleed": with_bleed, "key": key},
        )
        return response.json()


class HttpTranslator(ServiceClient):
    service_name = "translation service"

    async def translate(self, text, source_language, target_language, *, correlation_id):
        response = await self._request(
            "POST", "/translate", correlation_id,
            json={"text": text, "source_language": source_language, "target_language": target_language},
        )
        return response.json()["text"]


class HttpLayoutRenderer(ServiceClient):
    service_name = "layout service"

    async def validate_layout(self, layout, *, correlation_id):
        await self._request("POST", "/layouts/validate", correlation_id, json=layout)

    async def render(self, gazette_id, *, correlation_id):
        response = await self._request("POST", f"/gazettes/{gazette_id}/layout", correlation_id)
        return response.content


class HttpDocumentStore(ServiceClient):
    service_name = "document service"

    async def upload_pdf(self, gazette_id, pdf, *, correlation_id):
        response = await self._request(
            "PUT", f"/gazettes/{gazette_id}/pdf", correlation_id,
            content=pdf, headers={"Content-Type": "application/pdf"},
        )
        return response.json()["url"]

    async def update_status(self, gazette_id, status, pdf_url=None, *, correlation_id):
        await self._request(
            "PATCH", f"/gazettes/{gazette_id}", correlation_id,
            json={"status": status.value, "pdf_url": pdf_url},
        )


class HttpChannelSender(ServiceClient):
    """Delivers through the notification service's endpoint for one channel."""

    service_name = "notification service"

    def __init__(self, channel: Channel, base_url: str, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__(base_url, timeout=timeout, client=client)
        self.channel = channel

    async def send(self, recipient_ids, message, *, correlation_id):
        response = await self._request(
            "POST", f"/notifications/{self.channel.value.lower()}", correlation_id,
            json={"recipient_ids": recipient_ids, "message": message},
        )
        return response.json()


class Collaborators:
    """The set of collaborator clients the handlers depend on."""

    def __init__(
        self,
        media: MediaProcessor,
        translator: Translator,
        layout: LayoutRenderer,
        documents: DocumentStore,
        senders: dict[Channel, ChannelSender],
    ):
        self.media = media
        self.translator = translator
        self.layout = layout
        self.documents = documents
        self.senders = senders

    @classmethod
    def from_settings(cls, settings: Settings) -> "Collaborators":
        timeout = settings.collaborator_timeout_seconds
        return cls(
            media=HttpMediaProcessor(settings.media_service_url, timeout),
            translator=HttpTranslator(settings.translation_service_url, timeout),
            layout=HttpLayoutRenderer(settings.layout_service_url, timeout),
            documents=HttpDocumentStore(settings.document_status_url, timeout),
            senders={
                channel: HttpChannelSender(channel, settings.notification_service_url, timeout)
                for channel in Channel
            },
        )

    async def aclose(self) -> None:
        clients = [self.media, self.translator, self.layout, self.documents, *self.senders.values()]
        for client in clients:
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
