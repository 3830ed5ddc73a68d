"""Event consumer with consumer-level retry and dead-lettering."""

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from mediaflow.core.alerting import AlertManager
from mediaflow.core.logging import correlation_context, log_error, log_warning
from mediaflow.core.metrics import EVENTS_CONSUMED_TOTAL
from mediaflow.core.retry import RETRY_CONFIGS, RetryConfig, RetryExhaustedError, retry_async
from mediaflow.modules.events.bus import EventBus, EventMessage
from mediaflow.modules.events.schemas import BaseEvent, EventDecodeError, decode_event

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BaseEvent)

EventHandler = Callable[[E], Awaitable[object]]
DeadLetterCallback = Callable[[EventMessage, Optional[E], BaseException], Awaitable[None]]


class EventConsumer(Generic[E]):
    """Reads one topic through a consumer group and feeds a handler.

    A failing handler is retried with backoff; once the attempts are used up
    the message is copied to the dead-letter stream and acknowledged so it
    does not block the rest of the topic.
    """

    def __init__(
        self,
        bus: EventBus,
        topic: str,
        group: str,
        consumer_name: str,
        event_model: type[E],
        handler: EventHandler,
        retry_config: Optional[RetryConfig] = None,
        on_dead_letter: Optional[DeadLetterCallback] = None,
        alert_manager: Optional[AlertManager] = None,
        read_count: int = 10,
        block_ms: int = 5000,
        error_backoff_seconds: float = 5.0,
    ):
        self.bus = bus
        self.topic = topic
        self.group = group
        self.consumer_name = consumer_name
        self.event_model = event_model
        self.handler = handler
        self.retry_config = retry_config or RETRY_CONFIGS["event_handler"]
        self.on_dead_letter = on_dead_letter
        self.alert_manager = alert_manager
        self.read_count = read_count
        self.block_ms = block_ms
        self.error_backoff_seconds = error_backoff_seconds

    async def process_message(self, message: EventMessage) -> bool:
        """Handle one message end to end.

        Returns:
            True if the handler succeeded, False if the message was dead-lettered
        """
        try:
            event = decode_event(self.event_model, message.data)
        except EventDecodeError as e:
            with correlation_context(message.message_id):
                await self._dead_letter(message, None, e)
            return False

        with correlation_context(event.correlation_id or event.event_id):
            try:
                await retry_async(
                    self.handler,
                    event,
                    config=self.retry_config,
                    operation=f"handle {self.topic}",
                )
            except RetryExhaustedError as e:
                await self._dead_letter(message, event, e.last_error)
                return False

            await self.bus.ack(self.topic, self.group, message.message_id)
            EVENTS_CONSUMED_TOTAL.labels(topic=self.topic, result="handled").inc()
            return True

    async def _dead_letter(
        self,
        message: EventMessage,
        event: Optional[E],
        error: BaseException,
    ) -> None:
        error_text = f"{type(error).__name__}: {error}"
        await self.bus.dead_letter(message, self.group, error_text)
        await self.bus.ack(self.topic, self.group, message.message_id)
        EVENTS_CONSUMED_TOTAL.labels(topic=self.topic, result="dead_lettered").inc()

        log_error(
            logger,
            f"Dead-lettered message {message.message_id} from {self.topic}",
            exception=error,
            topic=self.topic,
            message_id=message.message_id,
            delivery_attempt=message.delivery_attempt,
        )

        if self.alert_manager:
            # One-shot alert per dead-lettered message
            labels = {"topic": self.topic, "message_id": message.message_id}
            self.alert_manager.check_metric("events_dead_lettered", 1, labels)
            self.alert_manager.check_metric("events_dead_lettered", 0, labels)

        if self.on_dead_letter:
            try:
                await self.on_dead_letter(message, event, error)
            except Exception as e:
                log_error(logger, "Dead-letter callback failed", exception=e, topic=self.topic)

    async def run_once(self) -> int:
        """Read and handle one batch.

        Returns:
            Number of messages processed
        """
        messages = await self.bus.read(
            self.topic,
            self.group,
            self.consumer_name,
            count=self.read_count,
            block_ms=self.block_ms,
        )
        for message in messages:
            await self.process_message(message)
        return len(messages)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Consume until stop_event is set."""
        await self.bus.ensure_group(self.topic, self.group)
        logger.info(f"Consumer {self.consumer_name} started on {self.topic}")

        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                log_warning(
                    logger,
                    f"Error reading from {self.topic}: {e}",
                    topic=self.topic,
                )
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.error_backoff_seconds)
                except asyncio.TimeoutError:
                    pass

        logger.info(f"Consumer {self.consumer_name} stopped on {self.topic}")
