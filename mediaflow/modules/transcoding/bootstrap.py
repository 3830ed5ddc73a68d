"""Wiring of engine components from settings.

The asyncio worker and the Celery tasks both build their components here,
each against its own database and Redis connections.
"""

import os
import socket
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaflow.core.alerting import AlertManager
from mediaflow.core.config import settings
from mediaflow.core.storage import ObjectStore
from mediaflow.modules.events import (
    EventBus,
    EventConsumer,
    RedisStreamEventBus,
    VideoProcessingFailedEvent,
    VideoUploadedEvent,
)
from mediaflow.modules.lock import RedisDistributedLockService
from mediaflow.modules.transcoding.announcer import JobCompletionAnnouncer
from mediaflow.modules.transcoding.ffmpeg import FFmpegEncoder
from mediaflow.modules.transcoding.handlers import (
    FailureEventHandler,
    JobCreationHandler,
    UploadDeadLetterNotifier,
)
from mediaflow.modules.transcoding.intake import JobDispatcher, JobIntakePoller
from mediaflow.modules.transcoding.orchestrator import CancellationRegistry, TranscodingOrchestrator
from mediaflow.modules.transcoding.profiles import resolve_profiles
from mediaflow.modules.transcoding.store import JobStore, SqlAlchemyJobStore


def default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class EngineComponents:
    """Shared building blocks of one worker process."""
    store: JobStore
    lock_service: RedisDistributedLockService
    bus: EventBus
    registry: CancellationRegistry = field(default_factory=CancellationRegistry)


def build_components(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
    lock_owner_token: Optional[str] = None,
) -> EngineComponents:
    return EngineComponents(
        store=SqlAlchemyJobStore(session_factory),
        lock_service=RedisDistributedLockService(redis_client, owner_token=lock_owner_token),
        bus=RedisStreamEventBus(redis_client),
    )


def build_orchestrator(components: EngineComponents) -> TranscodingOrchestrator:
    """Build an orchestrator for the configured profiles, storage and ffmpeg."""
    return TranscodingOrchestrator(
        store=components.store,
        lock_service=components.lock_service,
        object_store=ObjectStore(),
        encoder=FFmpegEncoder(settings.FFMPEG_PATH),
        profiles=resolve_profiles(settings.RENDITION_PROFILES),
        registry=components.registry,
    )


def build_intake_poller(components: EngineComponents, dispatcher: JobDispatcher) -> JobIntakePoller:
    return JobIntakePoller(components.store, components.lock_service, dispatcher)


def build_completion_announcer(
    components: EngineComponents,
    alert_manager: Optional[AlertManager] = None,
) -> JobCompletionAnnouncer:
    return JobCompletionAnnouncer(components.store, components.bus, alert_manager=alert_manager)


def build_upload_consumer(
    components: EngineComponents,
    consumer_name: str,
    alert_manager: Optional[AlertManager] = None,
) -> EventConsumer[VideoUploadedEvent]:
    """Consumer creating jobs from upload events."""
    return EventConsumer(
        bus=components.bus,
        topic=settings.EVENT_TOPIC_VIDEO_UPLOADED,
        group=settings.EVENT_CONSUMER_GROUP,
        consumer_name=consumer_name,
        event_model=VideoUploadedEvent,
        handler=JobCreationHandler(components.store).handle,
        on_dead_letter=UploadDeadLetterNotifier(components.bus),
        alert_manager=alert_manager,
        read_count=settings.EVENT_READ_COUNT,
        block_ms=settings.EVENT_READ_BLOCK_MS,
    )


def build_failure_consumer(
    components: EngineComponents,
    consumer_name: str,
    alert_manager: Optional[AlertManager] = None,
) -> EventConsumer[VideoProcessingFailedEvent]:
    """Consumer recording externally reported processing failures."""
    return EventConsumer(
        bus=components.bus,
        topic=settings.EVENT_TOPIC_PROCESSING_FAILED,
        group=settings.EVENT_CONSUMER_GROUP,
        consumer_name=consumer_name,
        event_model=VideoProcessingFailedEvent,
        handler=FailureEventHandler(components.store, components.registry).handle,
        alert_manager=alert_manager,
        read_count=settings.EVENT_READ_COUNT,
        block_ms=settings.EVENT_READ_BLOCK_MS,
    )
