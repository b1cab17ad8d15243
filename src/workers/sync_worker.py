"""
Execution Sync Worker.

Runs a full execution sync for every tracked agent on a fixed interval.
Runs as a long-lived background process.

Start with:
    python -m src.workers.sync_worker
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from src.config import get_settings
from src.logging_config import generate_trace_id, get_logger, setup_logging, trace_id_var
from src.services.service_factory import ServiceFactory, SyncServices

setup_logging()
logger = get_logger(__name__)
settings = get_settings()


class SyncWorker:
    """
    Periodically syncs executions from the platform.

    Each run gets its own trace ID. A run that blows up is logged and the
    loop carries on at the next interval.
    """

    def __init__(self, services: SyncServices | None = None, interval: float | None = None) -> None:
        self._running = False
        self._services = services or ServiceFactory.create_services()
        self._interval = interval if interval is not None else settings.sync_interval_seconds
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        self._running = True
        logger.info("sync_worker_started", interval=self._interval)

        while self._running:
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> dict[str, int | str]:
        token = trace_id_var.set(generate_trace_id())
        try:
            report = await self._services.orchestrator.sync_all()
            return report.summary()
        except Exception as e:
            logger.error("sync_worker_run_error", error=str(e))
            return {}
        finally:
            trace_id_var.reset(token)

    async def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        await self._services.close()
        logger.info("sync_worker_stopped")


async def main() -> None:
    worker = SyncWorker()

    loop = asyncio.get_event_loop()

    def shutdown_handler() -> None:
        logger.info("shutdown_signal_received")
        asyncio.ensure_future(worker.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.start()
    except KeyboardInterrupt:
        await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
