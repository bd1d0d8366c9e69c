from __future__ import annotations

"""Abstract base classes for the broker and the job status tracker.

The broker owns delivery (at-least-once, retries, stall detection); the
tracker owns what producers see. The SQLite implementations live in
``sqlite_backend``; the interfaces leave room for a Redis-backed broker.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    import asyncio

    from .models import BrokerJob, JobStatus, JobStatusRecord


class Broker(ABC):
    """Abstract job delivery interface.

    Implementations must provide:
    - Atomic dequeue (no two consumers claim the same job)
    - Idempotent enqueue (duplicate job_id doesn't corrupt state)
    - Heartbeats and stale-job reset for stall detection
    - A fetch that suspends until work arrives instead of busy polling
    """

    @abstractmethod
    def enqueue(self, job: "BrokerJob") -> bool:
        """Add a job to its queue.

        Returns:
            True if inserted, False if the job_id already existed
        """
        pass

    @abstractmethod
    def dequeue(self, queue_name: str, worker_id: str) -> Optional["BrokerJob"]:
        """Atomically claim the next available job of a queue.

        Implementation notes:
        - MUST be safe with many consumers calling concurrently
        - Lowest priority value first, then FIFO
        - Jobs held back by a retry delay are skipped
        - Sets state='active', worker_id, started_at, last_heartbeat
        """
        pass

    @abstractmethod
    async def fetch(
        self,
        queue_name: str,
        worker_id: str,
        timeout: float,
        stop: Optional["asyncio.Event"] = None,
    ) -> Optional["BrokerJob"]:
        """Wait up to ``timeout`` seconds for a job and claim it.

        Returns None on timeout or once ``stop`` is set.
        """
        pass

    @abstractmethod
    def ack_success(self, job_id: str) -> None:
        """Mark an active job as delivered."""
        pass

    @abstractmethod
    def ack_fail(self, job_id: str, error: str, retry: bool, delay_s: float = 0.0) -> bool:
        """Record a failed attempt.

        Args:
            job_id: Job identifier
            error: Error message (truncated to 500 chars)
            retry: Whether the failure may be retried at all
            delay_s: Backoff before the job becomes available again

        Returns:
            True if the job was put back to 'pending', False if it is now dead
        """
        pass

    @abstractmethod
    def remove_pending(self, job_id: str) -> bool:
        """Withdraw a job that has not been claimed yet."""
        pass

    @abstractmethod
    def update_heartbeat(self, job_id: str) -> None:
        """Refresh the heartbeat of an active job."""
        pass

    @abstractmethod
    def reset_stale_running(self, timeout_s: float) -> List[Tuple[str, str]]:
        """Stall recovery: put active jobs without a recent heartbeat back to pending.

        Returns:
            (job_id, queue_name) of every reset job
        """
        pass

    @abstractmethod
    def counts(self, queue_name: str) -> Dict[str, int]:
        """Number of jobs per delivery state for a queue."""
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["BrokerJob"]:
        pass


class StatusTracker(ABC):
    """Persists {status, progress, output, error} per job.

    Each call touches exactly one record and is atomic. Callers never write
    the same job concurrently (a job is owned by one worker at a time).
    """

    @abstractmethod
    def create(
        self, job_id: str, job_type: str, project_id: str, input_data: Dict[str, Any]
    ) -> bool:
        """Create a ``queued`` record at progress 0.

        Returns:
            False if a record with this job_id already exists
        """
        pass

    @abstractmethod
    def update_job_status(
        self,
        job_id: str,
        status: "JobStatus",
        progress: Optional[int] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Apply one status transition.

        Implementation notes:
        - Terminal records are never modified (return False)
        - Progress never decreases; ``completed`` forces 100
        - ``output`` is stored on completion only, ``error`` on failure only

        Returns:
            True if the record was updated
        """
        pass

    @abstractmethod
    def get_job_status(self, job_id: str) -> Optional["JobStatusRecord"]:
        pass
