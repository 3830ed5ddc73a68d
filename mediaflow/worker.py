"""Long-running asyncio worker.

Runs the intake poller, the completion announcer and both event consumers
in one event loop until SIGINT or SIGTERM. Jobs run as tasks in this
process; on shutdown the loops stop and in-flight jobs are awaited so their
locks are released.

Usage:
    python -m mediaflow.worker
"""

import asyncio
import logging
import signal

from mediaflow.core.alerting import alert_manager, setup_default_thresholds
from mediaflow.core.config import settings
from mediaflow.core.database import async_session_maker, engine
from mediaflow.core.logging import setup_logging
from mediaflow.core.metrics import set_app_info
from mediaflow.core.redis import create_redis_client
from mediaflow.core.tracing import setup_tracing, shutdown_tracing
from mediaflow.modules.transcoding.bootstrap import (
    build_completion_announcer,
    build_components,
    build_failure_consumer,
    build_intake_poller,
    build_orchestrator,
    build_upload_consumer,
    default_consumer_name,
)
from mediaflow.modules.transcoding.intake import AsyncioJobDispatcher
from mediaflow.modules.transcoding.polling import run_periodic

logger = logging.getLogger(__name__)


async def run_worker(stop_event: asyncio.Event) -> None:
    """Run every engine loop until stop_event is set."""
    redis_client = create_redis_client()
    components = build_components(async_session_maker, redis_client)
    consumer_name = default_consumer_name()

    dispatcher = AsyncioJobDispatcher(build_orchestrator(components), settings.MAX_CONCURRENT_JOBS)
    poller = build_intake_poller(components, dispatcher)
    announcer = build_completion_announcer(components, alert_manager)

    loops = [
        run_periodic(
            "intake",
            poller.run_cycle,
            settings.INTAKE_POLL_INTERVAL_SECONDS,
            stop_event,
            settings.INTAKE_ERROR_BACKOFF_SECONDS,
        ),
        run_periodic(
            "completion",
            announcer.run_cycle,
            settings.COMPLETION_POLL_INTERVAL_SECONDS,
            stop_event,
            settings.INTAKE_ERROR_BACKOFF_SECONDS,
        ),
        build_upload_consumer(components, consumer_name, alert_manager).run(stop_event),
        build_failure_consumer(components, consumer_name, alert_manager).run(stop_event),
    ]

    logger.info(f"Worker {consumer_name} started")
    try:
        await asyncio.gather(*loops)
    finally:
        logger.info("Waiting for in-flight jobs")
        await dispatcher.wait_idle()
        await redis_client.aclose()
        await engine.dispose()
        logger.info(f"Worker {consumer_name} stopped")


def main() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    setup_tracing(
        service_name=f"{settings.PROJECT_NAME}-worker",
        service_version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        otlp_endpoint=settings.OTLP_ENDPOINT,
    )
    setup_default_thresholds()
    set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

    async def runner() -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await run_worker(stop_event)

    try:
        asyncio.run(runner())
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    main()
