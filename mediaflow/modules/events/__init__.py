"""Event contracts and the event bus adapter."""

from mediaflow.modules.events.bus import EventBus, EventMessage, RedisStreamEventBus
from mediaflow.modules.events.consumer import EventConsumer
from mediaflow.modules.events.schemas import (
    BaseEvent,
    EventDecodeError,
    VideoProcessingFailedEvent,
    VideoTranscodedEvent,
    VideoUploadedEvent,
    decode_event,
)

__all__ = [
    "BaseEvent",
    "EventBus",
    "EventConsumer",
    "EventDecodeError",
    "EventMessage",
    "RedisStreamEventBus",
    "VideoProcessingFailedEvent",
    "VideoTranscodedEvent",
    "VideoUploadedEvent",
    "decode_event",
]
