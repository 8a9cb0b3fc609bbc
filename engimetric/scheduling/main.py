"""
Standalone scheduler process.

Run with `engimetric-scheduler` (or `python -m engimetric.scheduling.main`).
Only one scheduler process should run per deployment.
"""

import asyncio
import signal

import structlog

from engimetric.db.client import close_db, init_db
from engimetric.kernel.logging import configure_logging
from engimetric.scheduling.scheduler import init_scheduler, shutdown_scheduler

logger = structlog.get_logger()


async def _run() -> None:
    configure_logging()
    await init_db()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    try:
        await init_scheduler()
        logger.info("Scheduler process running")
        await stop.wait()
    finally:
        logger.info("Scheduler process stopping")
        await shutdown_scheduler()
        await close_db()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
