from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from proofsmith.events import EventSink, heartbeat_event

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 1.2


async def _beat(stage: str, sink: EventSink, started: float, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        try:
            sink(heartbeat_event(stage, elapsed_ms))
        except Exception as exc:
            # A broken sink stops the beats; it never fails the work.
            logger.warning("Heartbeat sink for %s failed, stopping heartbeats: %s", stage, exc)
            return


async def with_heartbeat(
    stage: str,
    sink: EventSink | None,
    work: Callable[[], Awaitable[T]],
    *,
    interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
) -> T:
    """Await ``work()`` while emitting periodic heartbeat events to ``sink``.

    The heartbeat task is cancelled and awaited however the work settles, so
    no periodic timer outlives the call.
    """
    if sink is None:
        return await work()

    started = time.monotonic()
    ticker = asyncio.create_task(_beat(stage, sink, started, interval_seconds))
    try:
        return await work()
    finally:
        ticker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await ticker
