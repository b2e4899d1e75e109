"""
Command-line entry point for the computed outbox worker.

Examples:
    calcbase-worker                      # poll forever (internal dispatch)
    calcbase-worker --once --limit 50    # process one batch and exit
    calcbase-worker --stats              # print outbox counts
    calcbase-worker --retry TASK_ID      # requeue a permanently failed task
"""

import argparse
import asyncio
import signal
import sys

import orjson

from calcbase.core.config import settings
from calcbase.core.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="calcbase-worker",
        description="Process the computed-field outbox",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process one batch and exit (usable from an external scheduler)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.computed_claim_batch_size,
        help="Maximum tasks claimed per batch",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.computed_poll_interval_seconds,
        help="Seconds between polls of an idle queue",
    )
    parser.add_argument("--worker-id", type=str, default=None, help="Worker identity")
    parser.add_argument("--stats", action="store_true", help="Print outbox counts and exit")
    parser.add_argument("--retry", metavar="TASK_ID", help="Requeue a failed task and exit")
    return parser


async def main_async(argv: list[str] | None = None) -> int:
    """Main async entry point."""
    args = build_parser().parse_args(argv)

    from calcbase.computed.outbox import ComputedOutbox
    from calcbase.db.session import close_db, get_db_context

    try:
        if args.stats:
            async with get_db_context() as db:
                stats = await ComputedOutbox(db).get_stats()
            print(orjson.dumps(stats).decode())
            return 0

        if args.retry:
            async with get_db_context() as db:
                task = await ComputedOutbox(db).retry_failed(args.retry)
            print(f"Requeued {task.id}")
            return 0

        if args.once:
            from calcbase.computed.worker import run_once

            processed = await run_once(args.worker_id, args.limit)
            print(f"Processed {processed} tasks")
            return 0

        from calcbase.computed.dispatch import run_polling_dispatcher

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass

        await run_polling_dispatcher(
            interval_seconds=args.interval,
            batch_size=args.limit,
            stop_event=stop_event,
            worker_id=args.worker_id,
        )
        return 0
    finally:
        await close_db()


def main() -> int:
    """Main entry point."""
    setup_logging(log_level=settings.log_level, json_logs=settings.json_logs)
    try:
        return asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
