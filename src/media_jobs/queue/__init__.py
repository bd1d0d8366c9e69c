"""Job queue system: broker, status tracker, workers and runtime."""

from .backends import Broker, StatusTracker
from .events import EventBus, WorkerEvent, WorkerEventType, log_worker_event
from .manager import Queue, QueueManager
from .models import (
    DEFAULT_PRIORITIES,
    BrokerJob,
    DeliveryState,
    JobOutcome,
    JobStatus,
    JobStatusRecord,
    JobType,
    QueueSpec,
)
from .runtime import Runtime
from .sqlite_backend import SQLiteBroker, SQLiteDatabase, SQLiteStatusTracker
from .worker import JobContext, Worker

__all__ = [
    "Broker",
    "StatusTracker",
    "EventBus",
    "WorkerEvent",
    "WorkerEventType",
    "log_worker_event",
    "Queue",
    "QueueManager",
    "DEFAULT_PRIORITIES",
    "BrokerJob",
    "DeliveryState",
    "JobOutcome",
    "JobStatus",
    "JobStatusRecord",
    "JobType",
    "QueueSpec",
    "Runtime",
    "SQLiteBroker",
    "SQLiteDatabase",
    "SQLiteStatusTracker",
    "JobContext",
    "Worker",
]
