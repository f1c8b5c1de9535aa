"""RosterSync - Main entry point."""

import asyncio
import logging
import signal
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import __version__
from .config import Config, setup_logging
from .sync import (
    ConnectivityMonitor,
    LinkStatePoller,
    LocalStore,
    MutationQueue,
    OfflineRepository,
    PostgrestClient,
    RemoteAuthority,
    SyncEngine,
    SyncStatus,
    SyncStatusView,
)

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Owns the periodic sync trigger.

    The scheduler runs on the application's event loop and calls straight
    into the engine; the engine's own guard drops a tick that lands while a
    cycle is still running.
    """

    def __init__(self, config: Config, sync_engine: SyncEngine) -> None:
        self.config = config
        self.sync_engine = sync_engine
        self.scheduler = AsyncIOScheduler()

    def start(self) -> None:
        """Start the periodic scheduler. Must be called from the event loop."""
        self.scheduler.add_job(
            self.sync_engine.sync,
            trigger=IntervalTrigger(seconds=self.config.sync.interval_seconds),
            kwargs={"reason": "periodic"},
            id="sync_job",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(
            f"Sync loop started (interval: {self.config.sync.interval_seconds}s)"
        )

    def stop(self) -> None:
        """Shut down the scheduler if running."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def reschedule(self, interval_seconds: int) -> None:
        """Change the sync interval on the fly."""
        self.config.sync.interval_seconds = interval_seconds
        if self.scheduler.running:
            self.scheduler.reschedule_job(
                "sync_job",
                trigger=IntervalTrigger(seconds=interval_seconds),
            )
            logger.info(f"Sync interval changed to {interval_seconds}s")

    def trigger_sync(self, job_id: str = "immediate_sync") -> None:
        """Run a one-off sync as soon as possible."""
        if self.scheduler.running:
            self.scheduler.add_job(
                self.sync_engine.sync,
                kwargs={"reason": "manual"},
                id=job_id,
                replace_existing=True,
            )


class RosterSyncApp:
    """Main application class.

    Wires components together and handles lifecycle (start / shutdown).
    """

    def __init__(self, config: Optional[Config] = None):
        """Initialize the application."""
        self.config = config or Config.load()
        setup_logging(self.config.debug_mode)

        logger.info(f"RosterSync {__version__} starting...")
        logger.info(f"Using API URL: {self.config.api_url}")

        settings = self.config.sync
        self.store = LocalStore()
        self.queue = MutationQueue(soft_limit=settings.queue_soft_limit)

        self.client = PostgrestClient(
            api_url=self.config.api_url,
            api_key=self.config.api_key,
            access_token=self.config.access_token,
            timeout=settings.request_timeout,
        )
        self.remote = RemoteAuthority(self.client, user_id=self.config.user_id)

        self.connectivity = ConnectivityMonitor()
        self.poller = LinkStatePoller(
            self.connectivity, interval=settings.link_poll_interval
        )

        self.sync_engine = SyncEngine(
            remote=self.remote,
            store=self.store,
            queue=self.queue,
            connectivity=self.connectivity,
            settings=settings,
        )
        self.repository = OfflineRepository(
            store=self.store,
            queue=self.queue,
            connectivity=self.connectivity,
            remote=self.remote,
            prefer_remote_reads=settings.prefer_remote_reads,
            on_write=self._on_local_write,
        )
        self.status_view = SyncStatusView(self.sync_engine, self.connectivity)
        self.coordinator = SyncCoordinator(self.config, self.sync_engine)

        self.sync_engine.subscribe_sync_status(self._on_status_change)
        self.sync_engine.on_discard(self._on_discard)

        # State
        self._shutdown_done = False
        self._stop_event: Optional[asyncio.Event] = None

    async def run(self) -> None:
        """Run until a shutdown signal arrives."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._signal_handler, signum)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(
                    signum, lambda s, f: loop.call_soon_threadsafe(self._signal_handler, s)
                )

        self.poller.poll_once()
        self.poller.start()
        self.sync_engine.attach()

        await self.sync_engine.sync("startup")
        self.coordinator.start()

        logger.info("RosterSync running")
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    # -- Event handlers ---------------------------------------------------

    def _on_local_write(self, entry) -> None:
        """Push local writes right away while online."""
        if self.connectivity.is_online():
            self.sync_engine.trigger("local-write")

    def _on_status_change(self, status: SyncStatus) -> None:
        if status is SyncStatus.ERROR:
            logger.warning(f"Sync error: {self.sync_engine.session.last_error}")
        logger.debug(f"Sync status: {self.status_view.snapshot().to_dict()}")

    def _on_discard(self, report) -> None:
        logger.warning(
            f"Local {report.operation.value} of {report.entity_type}/{report.entity_id} "
            f"was discarded: {report.reason}"
        )

    def _signal_handler(self, signum) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        if self._stop_event is not None:
            self._stop_event.set()

    # -- Lifecycle --------------------------------------------------------

    async def shutdown(self) -> None:
        """Shutdown the application. Safe to call multiple times."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down...")

        self.coordinator.stop()
        await self.poller.stop()
        await self.sync_engine.shutdown()
        self.client.close()
        self.queue.close()
        self.store.close()

        logger.info("Shutdown complete")


def main() -> None:
    """Main entry point."""
    app = RosterSyncApp()
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
