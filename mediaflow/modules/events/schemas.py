"""Pydantic schemas for inbound and outbound events.

Events travel as JSON with camelCase keys. They are immutable value records
and are never stored by the engine.
"""

import uuid
from datetime import datetime, timezone
from typing import ClassVar, Optional, TypeVar

from pydantic import BaseModel, Field, ValidationError

E = TypeVar("E", bound="BaseEvent")


class EventDecodeError(Exception):
    """Raised when a message payload is not a valid event."""


class BaseEvent(BaseModel):
    """Envelope fields shared by every event."""

    event_type: ClassVar[str] = "event"

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="eventId")
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="occurredAt"
    )
    correlation_id: Optional[str] = Field(None, alias="correlationId")

    class Config:
        populate_by_name = True
        frozen = True

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class VideoUploadedEvent(BaseEvent):
    """A source video landed in the object store and needs transcoding."""

    event_type: ClassVar[str] = "video.uploaded"

    video_id: str = Field(..., min_length=1, alias="videoId")
    tenant_id: str = Field("", alias="tenantId")
    input_location: str = Field(..., min_length=1, alias="inputLocation")


class VideoTranscodedEvent(BaseEvent):
    """Announces a completed job to downstream consumers.

    Consumers deduplicate by job_id; the same job may be announced more
    than once under an at-least-once transport.
    """

    event_type: ClassVar[str] = "video.transcoded"

    video_id: str = Field(..., alias="videoId")
    job_id: str = Field(..., alias="jobId")
    tenant_id: str = Field("", alias="tenantId")
    manifest_location: Optional[str] = Field(None, alias="manifestLocation")
    success: bool = True
    output_summary: dict[str, str] = Field(default_factory=dict, alias="outputSummary")


class VideoProcessingFailedEvent(BaseEvent):
    """Externally reported processing failure for a video."""

    event_type: ClassVar[str] = "video.processing_failed"

    video_id: str = Field(..., alias="videoId")
    tenant_id: str = Field("", alias="tenantId")
    error_message: str = Field("", alias="errorMessage")
    exception_type: str = Field("", alias="exceptionType")
    diagnostic_info: dict[str, str] = Field(default_factory=dict, alias="diagnosticInfo")


def decode_event(model: type[E], data: str) -> E:
    """Parse a JSON payload into an event model.

    Raises:
        EventDecodeError: If the payload is not valid JSON for the model
    """
    try:
        return model.model_validate_json(data)
    except ValidationError as e:
        raise EventDecodeError(f"Invalid {model.event_type} payload: {e}") from e
