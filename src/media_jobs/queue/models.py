"""Pydantic models for job queue data structures.

Two views of a job exist side by side:

- the broker view (``BrokerJob``, ``DeliveryState``) drives delivery,
  retries and stall detection;
- the tracker view (``JobStatusRecord``, ``JobStatus``) is what producers
  read back through the status API.
"""

import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import QueueConfig, RetryPolicy


class JobType(str, Enum):
    """Job types, one queue each."""

    CHARACTER_IMAGE = "character-image"
    OBJECT_IMAGE = "object-image"
    IMAGE_EDIT = "image-edit"
    VIDEO_GENERATION = "video-generation"
    CONTENT_PLANNING = "content-planning"
    VIDEO_STITCHING = "video-stitching"


# Lower value = dequeued sooner
DEFAULT_PRIORITIES: Dict[JobType, int] = {
    JobType.CHARACTER_IMAGE: 1,
    JobType.OBJECT_IMAGE: 3,
    JobType.IMAGE_EDIT: 7,
    JobType.VIDEO_GENERATION: 8,
    JobType.VIDEO_STITCHING: 9,
    JobType.CONTENT_PLANNING: 10,
}


class JobStatus(str, Enum):
    """Tracker states as seen by producers.

    State transitions:
        queued → processing     (worker accepts the job)
        processing → completed  (processor returned output)
        processing → failed     (processor failed and no retry remains)
        queued → failed         (cancelled before delivery)

    ``completed`` and ``failed`` are terminal: no further writes are accepted.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class DeliveryState(str, Enum):
    """Broker-side delivery states.

    State transitions:
        pending → active   (consumer dequeues)
        active → done      (acknowledged)
        active → pending   (retry with backoff, or stall recovery)
        active → dead      (attempts exhausted or permanent failure)
        pending → dead     (cancelled)
    """

    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    DEAD = "dead"


class BrokerJob(BaseModel):
    """One delivery unit as stored by the broker."""

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    queue_name: str = Field(..., description="Queue this job belongs to")
    project_id: str = Field(..., description="Owning project")
    input_data: Dict[str, Any] = Field(default_factory=dict, description="Type-specific payload")
    state: DeliveryState = Field(default=DeliveryState.PENDING)
    priority: int = Field(default=0, ge=0, description="Lower = processed first")
    attempt_count: int = Field(default=0, ge=0, description="Failed attempts so far")
    max_attempts: int = Field(default=1, ge=1, description="Delivery attempt limit")
    available_at: float = Field(default=0.0, description="Epoch seconds before which the job is held back")
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = Field(default=None)
    last_heartbeat: Optional[datetime] = Field(default=None)
    worker_id: Optional[str] = Field(default=None, description="Consumer that claimed the job")
    last_error: Optional[str] = Field(default=None, description="Last error message (truncated)")


class JobStatusRecord(BaseModel):
    """Status API view of a job."""

    job_id: str
    job_type: str
    project_id: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = Field(default=None, description="Set on completion only")
    error_message: Optional[str] = Field(default=None, description="Set on failure only")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def to_api(self) -> Dict[str, Any]:
        """Shape returned to status API callers."""
        data = {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "updated_at": self.updated_at.isoformat(),
        }
        if self.output_data is not None:
            data["output_data"] = self.output_data
        if self.error_message is not None:
            data["error_message"] = self.error_message
        return data


class JobOutcome(BaseModel):
    """Tagged result of one processor invocation.

    The worker turns a failure outcome into tracker and broker transitions;
    processors never touch either directly.
    """

    job_id: str
    ok: bool
    output: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    retryable: bool = False
    traceback: Optional[str] = None
    duration_s: float = Field(default=0.0, ge=0.0)

    @classmethod
    def success(cls, job_id: str, output: Dict[str, Any], duration_s: float = 0.0) -> "JobOutcome":
        return cls(job_id=job_id, ok=True, output=output, duration_s=duration_s)

    @classmethod
    def failure(cls, job_id: str, error: BaseException, duration_s: float = 0.0) -> "JobOutcome":
        """Build a failure outcome from an exception.

        Errors without a ``retryable`` attribute are treated as retryable,
        leaving the decision to the queue's retry policy.
        """
        return cls(
            job_id=job_id,
            ok=False,
            error_message=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            retryable=bool(getattr(error, "retryable", True)),
            traceback="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            duration_s=duration_s,
        )


class QueueSpec(BaseModel):
    """Static definition of one queue."""

    model_config = ConfigDict(frozen=True)

    name: str
    concurrency: int = Field(..., gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    default_priority: int = Field(default=0, ge=0)

    @classmethod
    def from_config(cls, job_type: JobType, config: QueueConfig) -> "QueueSpec":
        return cls(
            name=job_type.value,
            concurrency=config.concurrency,
            retry=config.retry,
            default_priority=DEFAULT_PRIORITIES.get(job_type, 0),
        )
