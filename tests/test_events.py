import logging

from media_jobs.queue import EventBus, WorkerEvent, WorkerEventType, log_worker_event


def test_subscribe_receives_matching_events():
    bus = EventBus()
    received = []
    bus.subscribe(WorkerEventType.COMPLETED, received.append)

    bus.publish(WorkerEvent(WorkerEventType.COMPLETED, "video-generation", job_id="a"))
    bus.publish(WorkerEvent(WorkerEventType.FAILED, "video-generation", job_id="b"))

    assert [e.job_id for e in received] == ["a"]


def test_subscribe_all_receives_everything():
    bus = EventBus()
    received = []
    bus.subscribe_all(received.append)

    for event_type in WorkerEventType:
        bus.publish(WorkerEvent(event_type, "image-edit"))

    assert [e.type for e in received] == list(WorkerEventType)


def test_handler_error_does_not_propagate(caplog):
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.subscribe(WorkerEventType.FAILED, broken)
    bus.subscribe(WorkerEventType.FAILED, received.append)

    with caplog.at_level(logging.ERROR):
        bus.publish(WorkerEvent(WorkerEventType.FAILED, "video-stitching", job_id="x"))

    assert len(received) == 1
    assert "handler bug" in caplog.text


def test_log_worker_event_levels(caplog):
    with caplog.at_level(logging.INFO, logger="media_jobs.queue.events"):
        log_worker_event(WorkerEvent(WorkerEventType.COMPLETED, "video-generation", job_id="ok-1"))
        log_worker_event(WorkerEvent(
            WorkerEventType.FAILED, "video-generation", job_id="retry-1", error="boom",
            attempt=1, will_retry=True,
        ))
        log_worker_event(WorkerEvent(WorkerEventType.FAILED, "video-generation", job_id="dead-1", error="boom"))
        log_worker_event(WorkerEvent(WorkerEventType.STALLED, "video-stitching", job_id="stall-1"))

    levels = {r.getMessage().split()[1]: r.levelno for r in caplog.records}
    assert levels["ok-1"] == logging.INFO
    assert levels["retry-1"] == logging.WARNING
    assert levels["dead-1"] == logging.ERROR
    assert levels["stall-1"] == logging.WARNING
