"""Event bus adapter backed by Redis Streams.

Delivery is at-least-once: a message stays pending in its consumer group
until acknowledged, and messages left pending by a crashed consumer are
claimed by a live one after EVENT_CLAIM_IDLE_MS.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import ResponseError

from mediaflow.core.config import settings
from mediaflow.core.metrics import EVENTS_DEAD_LETTERED_TOTAL, EVENTS_PUBLISHED_TOTAL
from mediaflow.modules.events.schemas import BaseEvent

logger = logging.getLogger(__name__)


@dataclass
class EventMessage:
    """A raw message read from a topic."""
    message_id: str
    topic: str
    data: str
    event_type: Optional[str] = None
    delivery_attempt: int = 1


class EventBus(ABC):
    """Publish/consume interface used by handlers and the announcer."""

    @abstractmethod
    async def publish(self, topic: str, event: BaseEvent) -> str:
        """Publish an event and return its message id."""

    @abstractmethod
    async def ensure_group(self, topic: str, group: str) -> None:
        """Create the consumer group if missing."""

    @abstractmethod
    async def read(
        self,
        topic: str,
        group: str,
        consumer: str,
        count: int,
        block_ms: int,
    ) -> list[EventMessage]:
        """Read the next batch for a consumer, reclaimed messages first."""

    @abstractmethod
    async def ack(self, topic: str, group: str, message_id: str) -> None:
        """Acknowledge a handled message."""

    @abstractmethod
    async def dead_letter(self, message: EventMessage, group: str, error: str) -> str:
        """Copy a message to the topic's dead-letter stream."""


class RedisStreamEventBus(EventBus):
    """EventBus over Redis Streams consumer groups."""

    def __init__(
        self,
        redis_client: redis.Redis,
        maxlen: int = settings.EVENT_STREAM_MAXLEN,
        claim_idle_ms: int = settings.EVENT_CLAIM_IDLE_MS,
        dead_letter_suffix: str = settings.EVENT_DEAD_LETTER_SUFFIX,
    ):
        self._redis = redis_client
        self._maxlen = maxlen
        self._claim_idle_ms = claim_idle_ms
        self._dead_letter_suffix = dead_letter_suffix

    async def publish(self, topic: str, event: BaseEvent) -> str:
        try:
            message_id = await self._redis.xadd(
                topic,
                {"event_type": event.event_type, "data": event.to_json()},
                maxlen=self._maxlen,
                approximate=True,
            )
        except Exception:
            EVENTS_PUBLISHED_TOTAL.labels(topic=topic, result="error").inc()
            raise

        EVENTS_PUBLISHED_TOTAL.labels(topic=topic, result="published").inc()
        logger.debug(
            f"Published {event.event_type} to {topic}",
            extra={"topic": topic, "message_id": message_id, "event_id": event.event_id},
        )
        return message_id

    async def ensure_group(self, topic: str, group: str) -> None:
        try:
            await self._redis.xgroup_create(topic, group, id="0", mkstream=True)
            logger.info(f"Created consumer group {group} on {topic}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read(
        self,
        topic: str,
        group: str,
        consumer: str,
        count: int,
        block_ms: int,
    ) -> list[EventMessage]:
        claimed = await self._claim_stale(topic, group, consumer, count)
        if claimed:
            return claimed

        response = await self._redis.xreadgroup(
            group, consumer, {topic: ">"}, count=count, block=block_ms
        )
        messages = []
        for _stream, entries in response or []:
            for message_id, fields in entries:
                messages.append(self._to_message(topic, message_id, fields))
        return messages

    async def _claim_stale(
        self,
        topic: str,
        group: str,
        consumer: str,
        count: int,
    ) -> list[EventMessage]:
        result = await self._redis.xautoclaim(
            topic, group, consumer, min_idle_time=self._claim_idle_ms, count=count
        )
        entries = result[1] if result and len(result) > 1 else []

        messages = []
        for message_id, fields in entries:
            if not fields:
                # Trimmed from the stream while pending; nothing to redeliver
                await self.ack(topic, group, message_id)
                continue
            message = self._to_message(topic, message_id, fields)
            message.delivery_attempt = 2
            messages.append(message)

        if messages:
            logger.warning(
                f"Reclaimed {len(messages)} stale messages on {topic}",
                extra={"topic": topic, "group": group},
            )
        return messages

    def _to_message(self, topic: str, message_id: str, fields: dict) -> EventMessage:
        return EventMessage(
            message_id=message_id,
            topic=topic,
            data=fields.get("data", ""),
            event_type=fields.get("event_type"),
        )

    async def ack(self, topic: str, group: str, message_id: str) -> None:
        await self._redis.xack(topic, group, message_id)

    async def dead_letter(self, message: EventMessage, group: str, error: str) -> str:
        dead_letter_topic = f"{message.topic}{self._dead_letter_suffix}"
        dead_letter_id = await self._redis.xadd(
            dead_letter_topic,
            {
                "event_type": message.event_type or "",
                "data": message.data,
                "original_message_id": message.message_id,
                "consumer_group": group,
                "error": error,
                "dead_lettered_at": datetime.now(timezone.utc).isoformat(),
            },
            maxlen=self._maxlen,
            approximate=True,
        )
        EVENTS_DEAD_LETTERED_TOTAL.labels(topic=message.topic).inc()
        return dead_letter_id
