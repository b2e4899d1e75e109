"""Celery task for external dispatch of the computed outbox."""

import asyncio

from calcbase.computed.worker import run_once
from calcbase.core.logging import get_logger
from calcbase.worker import app

logger = get_logger(__name__)


def run_async(coro):
    """
    Run async function from sync context.

    Args:
        coro: Async function to run

    Returns:
        Result of async function
    """
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop.run_until_complete(coro)


@app.task(name="computed.run_once")
def run_computed_outbox(worker_id: str = None, limit: int = None):
    """
    Process one batch of computed outbox tasks.

    Args:
        worker_id: Identity recorded on claimed tasks
        limit: Maximum tasks to claim

    Returns:
        dict: Number of processed tasks
    """
    processed = run_async(run_once(worker_id, limit))
    if processed:
        logger.info(f"Processed {processed} computed outbox tasks")
    return {"status": "completed", "processed": processed}
