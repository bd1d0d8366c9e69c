"""Queue manager: one queue per job type over a shared broker connection."""

import logging
import uuid
from typing import Any, Dict, Optional, Union

from ..errors import QueueNotFoundError
from ..models import QueueConfig
from .backends import Broker, StatusTracker
from .models import BrokerJob, JobStatus, JobStatusRecord, JobType, QueueSpec

logger = logging.getLogger(__name__)


class Queue:
    """A named queue bound to the shared broker."""

    def __init__(self, spec: QueueSpec, broker: Broker):
        self.spec = spec
        self.broker = broker

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def concurrency(self) -> int:
        return self.spec.concurrency

    def build_job(self, job_id: str, project_id: str, input_data: Dict[str, Any],
                  priority: Optional[int] = None) -> BrokerJob:
        return BrokerJob(
            job_id=job_id,
            queue_name=self.name,
            project_id=project_id,
            input_data=input_data,
            priority=self.spec.default_priority if priority is None else priority,
            max_attempts=self.spec.retry.max_attempts,
        )

    def add(self, job: BrokerJob) -> bool:
        return self.broker.enqueue(job)

    def info(self) -> Dict[str, Any]:
        counts = self.broker.counts(self.name)
        return {
            "name": self.name,
            "concurrency": self.concurrency,
            "max_attempts": self.spec.retry.max_attempts,
            **counts,
            "total": sum(counts.values()),
        }


class QueueManager:
    """Holds the queues and the status tracker behind the producer API.

    Queues are created once here and never recreated.
    """

    def __init__(self, broker: Broker, tracker: StatusTracker, queue_configs: Dict[str, QueueConfig]):
        self.broker = broker
        self.tracker = tracker
        self.queues: Dict[JobType, Queue] = {}

        for job_type in JobType:
            config = queue_configs.get(job_type.value)
            if config is None:
                raise QueueNotFoundError(f"No queue configuration for {job_type.value}")
            self.queues[job_type] = Queue(QueueSpec.from_config(job_type, config), broker)

    def get_queue(self, job_type: Union[JobType, str]) -> Queue:
        try:
            return self.queues[JobType(job_type)]
        except ValueError:
            raise QueueNotFoundError(f"Unknown job type: {job_type}") from None

    def enqueue(
        self,
        job_type: Union[JobType, str],
        project_id: str,
        input_data: Dict[str, Any],
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> str:
        """Create the status record and hand the job to its queue.

        Enqueueing an existing job_id is a no-op that returns the same id,
        except that a queued record left without a delivery row gets one.
        The delivery row is validated before the record is written.

        Returns:
            The job id
        """
        queue = self.get_queue(job_type)
        job_id = job_id or str(uuid.uuid4())

        job = queue.build_job(job_id, project_id, input_data, priority=priority)

        if not self.tracker.create(job_id, queue.name, project_id, input_data):
            record = self.tracker.get_job_status(job_id)
            if record.status != JobStatus.QUEUED or self.broker.get_job(job_id) is not None:
                logger.info("Job %s already exists, not enqueued again", job_id)
                return job_id
            logger.warning("Job %s had no delivery row, enqueueing it", job_id)
            job = queue.build_job(job_id, record.project_id, record.input_data, priority=priority)

        queue.add(job)
        logger.info("Enqueued %s job %s for project %s", queue.name, job_id, project_id)
        return job_id

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: Optional[int] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> bool:
        return self.tracker.update_job_status(job_id, status, progress, output=output, error=error)

    def get_job_status(self, job_id: str) -> Optional[JobStatusRecord]:
        return self.tracker.get_job_status(job_id)

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job that no worker has claimed yet.

        Active jobs are not interrupted.

        Returns:
            True if the job was withdrawn and marked failed
        """
        if not self.broker.remove_pending(job_id):
            return False
        self.tracker.update_job_status(job_id, JobStatus.FAILED, error="Job cancelled")
        logger.info("Job %s cancelled", job_id)
        return True

    def get_queue_info(self, job_type: Union[JobType, str]) -> Dict[str, Any]:
        return self.get_queue(job_type).info()
