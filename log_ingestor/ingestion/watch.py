"""
ingestion/watch.py
==================
Poll a bucket forever: one pass immediately, then one pass every
`interval` seconds after the previous pass finishes (passes never overlap).

run_once is blocking I/O, so each pass runs in a worker thread
(asyncio.to_thread) and the event loop stays free to receive signals.
SIGINT / SIGTERM set the shared stop event: the running pass stops claiming
new pages, no further pass is scheduled, and the loop returns normally.
Anything a crashed pass left in processing is picked up after the stale
timeout by the next scheduler that runs.
"""

import asyncio
import logging
import signal
import threading
from typing import Optional

logger = logging.getLogger(__name__)


async def watch(
    scheduler,
    bucket: str,
    prefix: Optional[str] = None,
    interval: float = 60.0,
    stop_event: Optional[threading.Event] = None,
    install_signal_handlers: bool = True,
) -> None:
    stop_event = stop_event or threading.Event()

    loop = asyncio.get_running_loop()
    if install_signal_handlers:
        def _request_stop(signame: str) -> None:
            logger.info("Received %s, shutting down...", signame)
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_stop, sig.name)

    logger.info("Starting watch mode for bucket: %s", bucket)
    logger.info("Check interval: %s seconds", interval)

    try:
        # A failing first pass is a configuration problem: let it surface.
        await asyncio.to_thread(scheduler.run_once, bucket, prefix, stop_event)

        while True:
            stopped = await asyncio.to_thread(stop_event.wait, interval)
            if stopped:
                break
            logger.info("Checking for new files...")
            try:
                await asyncio.to_thread(scheduler.run_once, bucket, prefix, stop_event)
            except Exception:
                logger.exception("Error processing files; will retry next interval.")
    finally:
        if install_signal_handlers:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    logger.info("Watch loop stopped cleanly.")


def run_watch(scheduler, bucket: str, prefix: Optional[str] = None, interval: float = 60.0) -> None:
    """Synchronous entry point used by the CLI."""
    asyncio.run(watch(scheduler, bucket, prefix, interval))
