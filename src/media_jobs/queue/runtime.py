"""Runtime context: the explicitly constructed owner of shared queue state.

Lifecycle:
    runtime = Runtime(config)
    runtime.open()                  # connection, tracker, queues, blob store
    workers = build_workers(runtime, ...)
    await runtime.start(workers)    # wire events, start consumers + stall monitor
    ...
    await runtime.shutdown()        # stall monitor, drain workers, close connection

Handles are only available between ``open()`` and ``shutdown()``.
"""

import asyncio
import logging
from contextlib import suppress
from typing import List, Optional, Tuple

from ..blob import BlobStore
from ..models import MediaJobsConfig
from .events import EventBus, WorkerEvent, WorkerEventType, log_worker_event
from .manager import QueueManager
from .sqlite_backend import SQLiteBroker, SQLiteDatabase, SQLiteStatusTracker
from .worker import Worker

logger = logging.getLogger(__name__)


class Runtime:
    """Owns the broker connection, tracker, queue manager, event bus and blob store."""

    def __init__(self, config: MediaJobsConfig):
        self.config = config
        self.events = EventBus()
        self.events.subscribe_all(log_worker_event)
        self.workers: List[Worker] = []

        self._database: Optional[SQLiteDatabase] = None
        self._broker: Optional[SQLiteBroker] = None
        self._tracker: Optional[SQLiteStatusTracker] = None
        self._queues: Optional[QueueManager] = None
        self._blob_store: Optional[BlobStore] = None
        self._stall_task: Optional[asyncio.Task] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def _require(self, handle, name: str):
        if self._closed:
            raise RuntimeError(f"Runtime is shut down, {name} is no longer available")
        if handle is None:
            raise RuntimeError(f"Runtime not opened, call open() before using {name}")
        return handle

    @property
    def broker(self) -> SQLiteBroker:
        return self._require(self._broker, "broker")

    @property
    def tracker(self) -> SQLiteStatusTracker:
        return self._require(self._tracker, "tracker")

    @property
    def queues(self) -> QueueManager:
        return self._require(self._queues, "queues")

    @property
    def blob_store(self) -> BlobStore:
        return self._require(self._blob_store, "blob_store")

    @property
    def is_open(self) -> bool:
        return self._database is not None and not self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "Runtime":
        """Create the shared connection and every queue (once)."""
        if self._closed:
            raise RuntimeError("Runtime is shut down and cannot be reopened")
        if self._database is not None:
            return self

        self._database = SQLiteDatabase(self.config.broker.db_path)
        self._broker = SQLiteBroker(self._database)
        self._tracker = SQLiteStatusTracker(self._database)
        self._queues = QueueManager(self._broker, self._tracker, self.config.queues)
        self._blob_store = BlobStore(self.config.blob.root, self.config.blob.url_prefix)
        self._blob_store.initialize()

        logger.info("Runtime opened (broker db: %s)", self.config.broker.db_path)
        return self

    async def start(self, workers: List[Worker]) -> None:
        """Wire each worker to the event bus and start consuming."""
        self.open()
        if self.workers:
            raise RuntimeError("Runtime already started")

        self.workers = list(workers)
        for worker in self.workers:
            worker.add_listener(self.events.publish)

        # Recover jobs orphaned by a previous crash before consumers start
        await self.check_stalled()

        for worker in self.workers:
            worker.start()

        self._stall_task = asyncio.create_task(self._stall_monitor(), name="stall-monitor")
        logger.info("Runtime started with %d workers", len(self.workers))

    async def shutdown(self) -> None:
        """Stop the stall monitor, drain workers, then close the connection."""
        if self._closed:
            return

        if self._stall_task is not None:
            self._stall_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._stall_task
            self._stall_task = None

        for worker in self.workers:
            await worker.stop()

        self.close()

    def close(self) -> None:
        """Close the connection; for runtimes that never started workers."""
        if self._closed:
            return
        if any(worker.running for worker in self.workers):
            raise RuntimeError("Workers are still running, use shutdown()")

        if self._database is not None:
            self._database.close()
        self._closed = True
        logger.info("Runtime shut down")

    async def __aenter__(self) -> "Runtime":
        return self.open()

    async def __aexit__(self, *exc) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Stall detection
    # ------------------------------------------------------------------

    async def check_stalled(self) -> List[Tuple[str, str]]:
        """Reset stalled jobs for redelivery and publish a ``stalled`` event for each."""
        reset = await asyncio.to_thread(
            self.broker.reset_stale_running, self.config.broker.stall_timeout_s
        )
        for job_id, queue_name in reset:
            self.events.publish(WorkerEvent(WorkerEventType.STALLED, queue_name, job_id=job_id))
        return reset

    async def _stall_monitor(self) -> None:
        while True:
            await asyncio.sleep(self.config.broker.stall_check_interval_s)
            try:
                await self.check_stalled()
            except Exception as e:
                logger.exception("Stall check failed")
                self.events.publish(WorkerEvent(WorkerEventType.ERROR, "stall-monitor", error=str(e)))
