"""
Internal polling dispatch for the computed outbox.

Exactly one dispatch mode is active per deployment. In ``internal`` mode
this loop calls ``run_once`` on an interval; in ``external`` mode an
outside scheduler (Celery beat, cron, tests) calls it instead and this
loop refuses to start.
"""

import asyncio
from typing import Optional

from calcbase.computed.worker import ComputedUpdateWorker, default_worker_id
from calcbase.core.config import settings
from calcbase.core.exceptions import DispatchModeError
from calcbase.core.logging import get_logger

logger = get_logger(__name__)


async def run_polling_dispatcher(
    interval_seconds: Optional[float] = None,
    batch_size: Optional[int] = None,
    stop_event: Optional[asyncio.Event] = None,
    worker: Optional[ComputedUpdateWorker] = None,
    worker_id: Optional[str] = None,
) -> None:
    """
    Background loop that periodically drains the outbox.

    Polls again immediately while a full batch was processed, and sleeps
    for ``interval_seconds`` once the queue is idle.

    Args:
        interval_seconds: Seconds between polls of an idle queue
        batch_size: Maximum tasks claimed per poll
        stop_event: Event to signal shutdown
        worker: Worker to use (built from settings when omitted)
        worker_id: Identity recorded on claimed tasks

    Raises:
        DispatchModeError: If the deployment is configured for external dispatch
    """
    if settings.computed_dispatch_mode != "internal":
        raise DispatchModeError("internal", settings.computed_dispatch_mode)

    interval_seconds = interval_seconds or settings.computed_poll_interval_seconds
    batch_size = batch_size or settings.computed_claim_batch_size
    worker_id = worker_id or default_worker_id()

    if worker is None:
        from calcbase.realtime.publisher import default_event_bus

        worker = ComputedUpdateWorker(event_bus=default_event_bus())

    logger.info(f"Starting computed dispatcher {worker_id} (interval: {interval_seconds}s)")

    while True:
        if stop_event and stop_event.is_set():
            logger.info("Computed dispatcher stopping")
            break

        processed = 0
        try:
            processed = await worker.run_once(worker_id, batch_size)
        except Exception as e:
            logger.exception(f"Error in computed dispatcher: {e}")

        if processed >= batch_size:
            continue

        # Wait for next interval
        try:
            if stop_event:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
                break
            else:
                await asyncio.sleep(interval_seconds)
        except asyncio.TimeoutError:
            continue
