"""Webhook worker process.

Run with ``python -m eventrelay.worker`` (or the ``eventrelay-worker``
script). Pulls the primary and retry topics, sweeps due retries, relays
operator alerts, sends queued email, and drains in-flight deliveries on
SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

from eventrelay.components import Components, build_components
from eventrelay.config import Settings, get_settings
from eventrelay.logging_config import configure_logging

logger = logging.getLogger(__name__)


async def run_worker(
    settings: Optional[Settings] = None,
    stop: Optional[asyncio.Event] = None,
    components: Optional[Components] = None,
) -> None:
    settings = settings or get_settings()
    stop = stop or asyncio.Event()
    owns_components = components is None
    components = components or await build_components(settings)

    loop = asyncio.get_running_loop()
    handled = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
            handled.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or no signal support on this platform
            pass

    components.dispatcher.start()
    components.alerts.start()
    components.mailer.start()
    sweeper = asyncio.create_task(components.sweeper.run(stop), name="retry-sweeper")
    logger.info(f"Worker started (bus={settings.bus_backend}, concurrency={settings.worker_concurrency})")

    try:
        await stop.wait()
    finally:
        logger.info(f"Shutting down, draining for up to {settings.shutdown_grace}s")
        stop.set()
        await components.dispatcher.stop(settings.shutdown_grace)
        await components.alerts.stop()
        await components.mailer.stop()
        await sweeper
        if owns_components:
            await components.aclose()
        for sig in handled:
            loop.remove_signal_handler(sig)
        logger.info("Worker stopped")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
