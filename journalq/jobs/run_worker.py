#!/usr/bin/env python3
"""
Standalone worker process.

Run this separately from the web server (with ENABLE_WORKER=false there)
so long-running handlers never hold up API workers.

Usage:
    python -m journalq.jobs.run_worker                    # defaults from env
    python -m journalq.jobs.run_worker --concurrency 5
    python -m journalq.jobs.run_worker --burst            # Process and exit
"""

import argparse
import asyncio
import signal
import sys

from journalq.config import config
from journalq.jobs.models import JobStatus
from journalq.jobs.queue import QueueService
from journalq.jobs.worker import WorkerPool
from journalq.journal.handlers import register_journal_handlers
from journalq.services.completion import AnthropicCompletionService
from journalq.services.storage import build_storage
from journalq.utils.logging import configure_logging, worker_logger as logger


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the journal queue worker")
    parser.add_argument(
        "--concurrency",
        "-c",
        type=int,
        default=config.WORKER_CONCURRENCY,
        help=f"Jobs executed at once (default: {config.WORKER_CONCURRENCY})"
    )
    parser.add_argument(
        "--poll-interval",
        "-p",
        type=float,
        default=config.WORKER_POLL_INTERVAL,
        help=f"Seconds between queue polls (default: {config.WORKER_POLL_INTERVAL})"
    )
    parser.add_argument(
        "--burst",
        "-b",
        action="store_true",
        help="Run in burst mode (process all jobs and exit)"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    return parser.parse_args(argv)


async def run_burst(pool: WorkerPool, queue: QueueService):
    """Process until nothing is waiting or active."""
    while True:
        await pool.process_jobs()
        pending = await queue.get_jobs_by_state([JobStatus.WAITING, JobStatus.ACTIVE])
        if not pending and pool.active_count == 0:
            return
        await asyncio.sleep(pool.poll_interval)


async def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging("DEBUG" if args.verbose else config.LOG_LEVEL)

    if not config.completion_configured:
        logger.error("ANTHROPIC_API_KEY is required to run journal handlers")
        return 1

    queue = QueueService(config)
    await queue.initialize()
    queue.events.attach_logging()

    if not queue.is_durable:
        # The fallback store is private to this process; nothing else can enqueue into it
        logger.warning("Standalone worker is using the in-process backend; it will only see its own jobs")

    pool = WorkerPool(
        queue,
        concurrency=args.concurrency,
        poll_interval=args.poll_interval,
    )
    register_journal_handlers(pool, AnthropicCompletionService(config), build_storage(config), config)

    # Handle shutdown signals gracefully
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        if args.burst:
            await run_burst(pool, queue)
        else:
            pool.start()
            logger.info("Worker running. Press Ctrl+C to stop.")
            await shutdown_event.wait()
            logger.info("Shutdown signal received")
    except Exception as e:
        logger.exception("Worker error", error=str(e))
        return 1
    finally:
        await pool.shutdown(wait=True, timeout=60.0)
        await queue.close()
        logger.info("Worker stopped")

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
