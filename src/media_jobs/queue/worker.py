"""Generic asyncio worker bound to one queue.

This module provides:
- ``concurrency`` consumer tasks per worker, each holding at most one job
- Broker-side suspension while the queue is empty (no polling backoff here)
- Heartbeat tasks for long-running jobs
- Tagged outcomes: processor failures become tracker/broker transitions
- Redelivery guard for jobs whose status is already terminal
- Graceful shutdown that lets in-flight jobs finish
"""

import asyncio
import logging
import os
import time
from contextlib import suppress
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from .events import WorkerEvent, WorkerEventType
from .models import BrokerJob, JobOutcome, JobStatus

if TYPE_CHECKING:
    from .runtime import Runtime

logger = logging.getLogger(__name__)


class JobContext:
    """What a processor sees of its job."""

    def __init__(self, job: BrokerJob, worker: "Worker"):
        self.job = job
        self._worker = worker
        self.progress = 0

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def project_id(self) -> str:
        return self.job.project_id

    @property
    def input_data(self) -> Dict[str, Any]:
        return self.job.input_data

    @property
    def attempt(self) -> int:
        """1-based attempt number."""
        return self.job.attempt_count + 1

    async def update_progress(self, progress: int) -> None:
        """Record a checkpoint; values below the last checkpoint are ignored."""
        progress = max(self.progress, int(progress))
        self.progress = progress
        await asyncio.to_thread(
            self._worker.tracker.update_job_status, self.job_id, JobStatus.PROCESSING, progress
        )


Processor = Callable[[JobContext], Awaitable[Optional[Dict[str, Any]]]]
EventListener = Callable[[WorkerEvent], None]


class Worker:
    """Runs a processor against jobs of one queue.

    Example:
        >>> worker = Worker(runtime, "video-stitching", stitching.process)
        >>> await runtime.start([worker])
    """

    def __init__(
        self,
        runtime: "Runtime",
        queue_name: str,
        processor: Processor,
        concurrency: Optional[int] = None,
    ):
        queue = runtime.queues.get_queue(queue_name)

        self.runtime = runtime
        self.queue_name = queue.name
        self.processor = processor
        self.concurrency = concurrency or queue.concurrency
        self.retry = queue.spec.retry

        self.broker = runtime.broker
        self.tracker = runtime.tracker
        self.settings = runtime.config.broker

        self._listeners: List[EventListener] = []
        self._consumers: List[asyncio.Task] = []
        self._stop = asyncio.Event()
        self.active_jobs = 0

        if self.concurrency < 1:
            raise ValueError(f"Concurrency must be positive, got {self.concurrency}")

    def __repr__(self) -> str:
        return f"Worker(queue={self.queue_name!r}, concurrency={self.concurrency})"

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    @property
    def running(self) -> bool:
        return bool(self._consumers) and not self._stop.is_set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._consumers:
            raise RuntimeError(f"{self!r} already started")

        self._stop = asyncio.Event()
        pid = os.getpid()
        self._consumers = [
            asyncio.create_task(
                self._consume(f"{self.queue_name}-{pid}-{i}"),
                name=f"{self.queue_name}-consumer-{i}",
            )
            for i in range(self.concurrency)
        ]
        logger.info("Started %r", self)

    async def stop(self) -> None:
        """Stop fetching and wait for in-flight jobs to finish."""
        if not self._consumers:
            return
        self._stop.set()
        self.broker.wake(self.queue_name)

        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers = []
        logger.info("Stopped %r", self)

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def _consume(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                job = await self.broker.fetch(
                    self.queue_name, worker_id, self.settings.block_timeout_s, stop=self._stop
                )
            except Exception as e:
                logger.exception("Fetch failed in queue %s", self.queue_name)
                self._emit(WorkerEvent(WorkerEventType.ERROR, self.queue_name, error=str(e)))
                await asyncio.sleep(1.0)
                continue

            if job is None:
                continue

            try:
                await self._handle(job)
            except Exception as e:
                # Infrastructure failure; the job stays active until stall recovery
                logger.exception("Error handling job %s", job.job_id)
                self._emit(WorkerEvent(
                    WorkerEventType.ERROR, self.queue_name, job_id=job.job_id, error=str(e)
                ))

    async def _handle(self, job: BrokerJob) -> None:
        record = await asyncio.to_thread(self.tracker.get_job_status, job.job_id)
        if record is None:
            await asyncio.to_thread(
                self.tracker.create, job.job_id, job.queue_name, job.project_id, job.input_data
            )
        elif record.status.is_terminal:
            logger.warning(
                "Job %s redelivered but already %s, acknowledging without processing",
                job.job_id, record.status.value,
            )
            await asyncio.to_thread(self.broker.ack_success, job.job_id)
            return

        await asyncio.to_thread(self.tracker.update_job_status, job.job_id, JobStatus.PROCESSING)

        self.active_jobs += 1
        heartbeat = asyncio.create_task(self._heartbeat(job.job_id))
        try:
            outcome = await self._run_processor(job)
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            self.active_jobs -= 1

        await self._settle(job, outcome)

    async def _run_processor(self, job: BrokerJob) -> JobOutcome:
        start = time.monotonic()
        try:
            output = await self.processor(JobContext(job, self))
        except Exception as e:
            return JobOutcome.failure(job.job_id, e, time.monotonic() - start)
        return JobOutcome.success(job.job_id, output or {}, time.monotonic() - start)

    async def _settle(self, job: BrokerJob, outcome: JobOutcome) -> None:
        """Translate an outcome into tracker and broker transitions."""
        if outcome.ok:
            await asyncio.to_thread(
                self.tracker.update_job_status, job.job_id, JobStatus.COMPLETED, 100, outcome.output
            )
            await asyncio.to_thread(self.broker.ack_success, job.job_id)
            logger.info("Job %s succeeded in %.1fs", job.job_id, outcome.duration_s)
            self._emit(WorkerEvent(
                WorkerEventType.COMPLETED, self.queue_name, job_id=job.job_id, output=outcome.output
            ))
            return

        attempt = job.attempt_count + 1
        logger.debug("Job %s failed:\n%s", job.job_id, outcome.traceback)
        requeued = await asyncio.to_thread(
            self.broker.ack_fail,
            job.job_id,
            outcome.error_message,
            outcome.retryable,
            self.retry.delay_for(attempt),
        )
        if not requeued:
            await asyncio.to_thread(
                self.tracker.update_job_status,
                job.job_id,
                JobStatus.FAILED,
                error=outcome.error_message,
            )

        self._emit(WorkerEvent(
            WorkerEventType.FAILED,
            self.queue_name,
            job_id=job.job_id,
            error=outcome.error_message,
            attempt=attempt,
            will_retry=requeued,
        ))

    async def _heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval_s)
            try:
                await asyncio.to_thread(self.broker.update_heartbeat, job_id)
            except Exception as e:
                logger.warning("Heartbeat failed for %s: %s", job_id, e)

    def _emit(self, event: WorkerEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed for %s event", event.type.value)
