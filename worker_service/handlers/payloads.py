"""Payload shapes, one per job kind.

These are structural checks only: the queue rejects a payload at enqueue
time if it does not match. Business rules (supported content types, print
specifications) are enforced by the handlers.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


# ==================== Content ====================

class ContentType(str, Enum):
    IMAGE = "IMAGE"
    TEXT = "TEXT"


class ProcessingOptions(BaseModel):
    for_print: bool = False
    quality: Optional[int] = Field(default=None, ge=1, le=100)
    with_bleed: bool = False


class ContentPayload(BaseModel):
    """Raw content reference plus processing options."""
    content_id: str = Field(min_length=1)
    type: str  # checked against ContentType by the handler
    url: Optional[str] = None
    family_id: str
    text: Optional[str] = None
    source_language: str = "de"
    target_languages: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    processing_options: ProcessingOptions = Field(default_factory=ProcessingOptions)


# ==================== Document ====================

class ColorSpace(str, Enum):
    CMYK = "CMYK"
    RGB = "RGB"


MIN_RESOLUTION_DPI = 300
MIN_BLEED_MM = 3.0


class DocumentLayout(BaseModel):
    page_size: str = "A4"
    color_space: str = ColorSpace.CMYK.value
    resolution: int = MIN_RESOLUTION_DPI
    bleed: float = MIN_BLEED_MM
    template: Optional[str] = None


class DocumentPayload(BaseModel):
    """A gazette to lay out and render for print."""
    gazette_id: str = Field(min_length=1)
    family_id: Optional[str] = None
    content_ids: list[str] = Field(default_factory=list)
    layout: DocumentLayout = Field(default_factory=DocumentLayout)


class DocumentStatus(str, Enum):
    GENERATING = "GENERATING"
    READY_FOR_PRINT = "READY_FOR_PRINT"
    ERROR = "ERROR"


# ==================== Notification ====================

class NotificationType(str, Enum):
    CONTENT_UPDATE = "CONTENT_UPDATE"
    GAZETTE_GENERATED = "GAZETTE_GENERATED"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"


class NotificationPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    BULK = "BULK"


PRIORITY_LEVELS: dict[NotificationPriority, int] = {
    NotificationPriority.CRITICAL: 1,
    NotificationPriority.HIGH: 2,
    NotificationPriority.MEDIUM: 3,
    NotificationPriority.LOW: 4,
    NotificationPriority.BULK: 5,
}


class Channel(str, Enum):
    EMAIL = "EMAIL"
    PUSH = "PUSH"
    SMS = "SMS"


class NotificationContent(BaseModel):
    title: str
    body: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    template_id: Optional[str] = None
    template_version: Optional[str] = None


class NotificationPayload(BaseModel):
    """Message to deliver to recipients over one or more channels."""
    type: NotificationType
    recipient_ids: list[str] = Field(min_length=1)
    content: NotificationContent
    priority: NotificationPriority = NotificationPriority.MEDIUM
    channels: list[Channel] = Field(default_factory=lambda: [Channel.EMAIL], min_length=1)
    required_channels: Optional[list[Channel]] = None  # None means every requested channel
    batch_id: Optional[str] = None

    @model_validator(mode="after")
    def _required_subset_of_channels(self) -> "NotificationPayload":
        if self.required_channels is not None:
            missing = [c.value for c in self.required_channels if c not in self.channels]
            if missing:
                raise ValueError(f"required_channels not in channels: {', '.join(missing)}")
        # Each channel is attempted once
        self.channels = list(dict.fromkeys(self.channels))
        return self

    @property
    def queue_priority(self) -> int:
        """Queue priority used when the producer gives none."""
        return PRIORITY_LEVELS[self.priority]

    @property
    def effective_required_channels(self) -> list[Channel]:
        if self.required_channels is None:
            return list(self.channels)
        return list(self.required_channels)
