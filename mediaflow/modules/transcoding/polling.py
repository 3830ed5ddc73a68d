"""Timer loop shared by the intake poller and the completion announcer."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from mediaflow.core.logging import log_error

logger = logging.getLogger(__name__)


async def run_periodic(
    name: str,
    cycle: Callable[[], Awaitable[Any]],
    interval_seconds: float,
    stop_event: asyncio.Event,
    error_backoff_seconds: float = 5.0,
) -> None:
    """Call cycle every interval until stop_event is set.

    A failing cycle is logged and retried after error_backoff_seconds; it
    never ends the loop.
    """
    logger.info(f"{name} started (interval {interval_seconds}s)")

    while not stop_event.is_set():
        delay = interval_seconds
        try:
            await cycle()
        except Exception as e:
            log_error(logger, f"{name} cycle failed", exception=e, poller=name)
            delay = error_backoff_seconds

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    logger.info(f"{name} stopped")
