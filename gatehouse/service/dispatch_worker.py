"""Standalone verification email consumer.

Run as ``gatehouse-dispatch-worker`` (or ``python -m
gatehouse.service.dispatch_worker``) next to the API processes. It shares
only the dispatch queue with them and exits cleanly on SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal

from gatehouse.logging import get_logger
from gatehouse.service.runtime import get_runtime

logger = get_logger(__name__)


async def run_worker() -> None:
    runtime = get_runtime()
    consumer = runtime.consumer
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    await consumer.start()
    logger.info("dispatch_worker_running", queue=consumer.queue_name)
    try:
        await stop_event.wait()
    finally:
        await consumer.stop()
        await runtime.close()
        logger.info("dispatch_worker_exited")


def main() -> None:
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("dispatch_worker_interrupted")


if __name__ == "__main__":
    main()
