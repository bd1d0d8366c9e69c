"""Worker lifecycle events and the bus that centralizes their handling."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class WorkerEventType(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"
    ERROR = "error"


@dataclass
class WorkerEvent:
    """One lifecycle event emitted by a worker or the stall monitor."""

    type: WorkerEventType
    queue_name: str
    job_id: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempt: Optional[int] = None
    will_retry: bool = False
    timestamp: datetime = field(default_factory=datetime.now)


EventHandler = Callable[[WorkerEvent], None]


class EventBus:
    """Synchronous fan-out of worker events.

    Handler failures are logged and never reach the publisher, so a broken
    subscriber cannot fail a job.
    """

    def __init__(self):
        self._handlers: Dict[WorkerEventType, List[EventHandler]] = defaultdict(list)
        self._catch_all: List[EventHandler] = []

    def subscribe(self, event_type: WorkerEventType, handler: EventHandler) -> None:
        self._handlers[WorkerEventType(event_type)].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        self._catch_all.append(handler)

    def publish(self, event: WorkerEvent) -> None:
        for handler in [*self._handlers.get(event.type, []), *self._catch_all]:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s event", handler, event.type.value)


def log_worker_event(event: WorkerEvent) -> None:
    """Default subscriber: one log line per event."""
    if event.type == WorkerEventType.COMPLETED:
        logger.info("Job %s completed in queue %s", event.job_id, event.queue_name)
    elif event.type == WorkerEventType.FAILED:
        if event.will_retry:
            logger.warning(
                "Job %s failed in queue %s (attempt %s, will retry): %s",
                event.job_id, event.queue_name, event.attempt, event.error,
            )
        else:
            logger.error(
                "Job %s failed in queue %s: %s", event.job_id, event.queue_name, event.error
            )
    elif event.type == WorkerEventType.STALLED:
        logger.warning("Job %s stalled in queue %s, redelivering", event.job_id, event.queue_name)
    else:
        logger.error("Worker error in queue %s: %s", event.queue_name, event.error)
