# pos_sync/core/background_tasks.py
"""
Background tasks for connectivity probing and automatic sync.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from pos_sync.core.config import Settings
from pos_sync.services.coordinator import SyncCoordinator
from pos_sync.services.event_bus import EventType

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """Manages periodic background tasks."""

    def __init__(self, coordinator: SyncCoordinator, settings: Settings):
        self.coordinator = coordinator
        self.settings = settings
        self.tasks: list[asyncio.Task] = []
        self._running = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def start(self):
        """Start all background tasks."""
        if self._running:
            logger.warning("Background tasks already running")
            return

        self._running = True
        logger.info("Starting background tasks...")

        self._unsubscribe = self.coordinator.on(EventType.CONNECTIVITY_CHANGED, self.on_connectivity_changed)

        self.tasks.append(asyncio.create_task(self.connectivity_probe_task()))
        if self.settings.AUTO_SYNC_ENABLED:
            self.tasks.append(asyncio.create_task(self.initial_sync_task()))
            self.tasks.append(asyncio.create_task(self.periodic_sync_task()))

        logger.info(f"Started {len(self.tasks)} background tasks")

    async def stop(self):
        """Stop all background tasks."""
        if not self._running:
            return

        logger.info("Stopping background tasks...")
        self._running = False

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        for task in self.tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self.tasks.clear()
        logger.info("Background tasks stopped")

    async def on_connectivity_changed(self, event: Dict[str, Any]):
        """Drain the queue shortly after the connection comes back."""
        if not self._running or not self.settings.AUTO_SYNC_ENABLED:
            return
        if event["data"].get("online"):
            task = asyncio.create_task(self.reconnect_sync_task())
            self.tasks.append(task)
            task.add_done_callback(self._forget_task)

    def _forget_task(self, task: asyncio.Task):
        if task in self.tasks:
            self.tasks.remove(task)

    async def reconnect_sync_task(self):
        try:
            await asyncio.sleep(self.settings.RECONNECT_SYNC_DELAY_SECONDS)
            if self.coordinator.is_online:
                logger.info("Back online, starting sync")
                await self.coordinator.initialize_sync()
        except asyncio.CancelledError:
            logger.info("Reconnect sync task cancelled")
        except Exception as e:
            logger.error(f"Error in reconnect sync task: {e}")

    async def initial_sync_task(self):
        """Sync once shortly after startup."""
        try:
            await asyncio.sleep(self.settings.INITIAL_SYNC_DELAY_SECONDS)
            if self.coordinator.is_online:
                await self.coordinator.initialize_sync()
        except asyncio.CancelledError:
            logger.info("Initial sync task cancelled")
        except Exception as e:
            logger.error(f"Error in initial sync task: {e}")

    async def connectivity_probe_task(self):
        """
        Periodically probe the server health endpoint.
        Runs every CONNECTIVITY_PROBE_INTERVAL_SECONDS.
        """
        while self._running:
            try:
                await asyncio.sleep(self.settings.CONNECTIVITY_PROBE_INTERVAL_SECONDS)
                await self.coordinator.probe()

            except asyncio.CancelledError:
                logger.info("Connectivity probe task cancelled")
                break
            except Exception as e:
                logger.error(f"Error in connectivity probe task: {e}")

    async def periodic_sync_task(self):
        """
        Periodically drain the queue and refresh the cache.
        Runs every PERIODIC_SYNC_INTERVAL_SECONDS while online.
        """
        while self._running:
            try:
                await asyncio.sleep(self.settings.PERIODIC_SYNC_INTERVAL_SECONDS)

                if not self.coordinator.is_online:
                    logger.debug("Offline, skipping periodic sync")
                    continue

                result = await self.coordinator.initialize_sync()
                if result.already_running:
                    logger.debug("Periodic sync skipped, a pass is already running")

            except asyncio.CancelledError:
                logger.info("Periodic sync task cancelled")
                break
            except Exception as e:
                logger.error(f"Error in periodic sync task: {e}")
                # Wait before retrying
                await asyncio.sleep(60)
