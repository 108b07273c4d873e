"""Poller process - Run with: python -m jobflow.worker

Calls process_jobs() every --interval seconds until SIGINT/SIGTERM. Run
as many workers as needed; claims are coordinated through the database.
"""

import argparse
import logging
import os
import signal
import threading
from typing import Optional

from jobflow.db import init_db
from jobflow.scheduler.job_runner import process_jobs

logger = logging.getLogger("jobflow.worker")

WORKER_POLL_INTERVAL = float(os.environ.get("WORKER_POLL_INTERVAL", "5"))


def parse_args(argv: Optional[list[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Jobflow job poller")
    parser.add_argument(
        "--interval",
        type=float,
        default=WORKER_POLL_INTERVAL,
        help="Seconds between poll cycles when the queue is idle",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle and exit",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    return parser.parse_args(argv)


def run_worker(interval: float, stop_event: threading.Event, once: bool = False) -> int:
    """Poll until stop_event is set. Returns the number of jobs processed."""
    total = 0
    while not stop_event.is_set():
        try:
            summary = process_jobs()
            total += summary["processed"]
        except Exception as e:
            # Claim/recovery failed (database unavailable?); try again next cycle
            logger.error(f"Poll cycle failed: {e}", exc_info=True)
            summary = {"processed": 0}

        if once:
            break
        # Only sleep when the queue was empty
        if summary["processed"] == 0:
            stop_event.wait(interval)
    return total


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    init_db()
    stop_event = threading.Event()

    def shutdown(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    logger.info(f"Worker started (interval {args.interval}s)")
    total = run_worker(args.interval, stop_event, once=args.once)
    logger.info(f"Worker stopped after processing {total} job(s)")


if __name__ == "__main__":
    main()
