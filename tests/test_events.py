from docworker.v1.infra.workers.events import EventEmitter, WorkerEvent


def test_subscribe_to_one_event_or_all():
    emitter = EventEmitter()
    started, everything = [], []

    emitter.subscribe(lambda event, payload: started.append(payload), WorkerEvent.STARTED)
    emitter.subscribe(lambda event, payload: everything.append(event))

    emitter.emit(WorkerEvent.STARTED, {"worker": "alpha"})
    emitter.emit(WorkerEvent.STOPPED)

    assert started == [{"worker": "alpha"}]
    assert everything == [WorkerEvent.STARTED, WorkerEvent.STOPPED]
    assert emitter.listener_count(WorkerEvent.STARTED) == 1
    assert emitter.listener_count() == 1


def test_unsubscribe_removes_listener():
    emitter = EventEmitter()
    seen = []
    unsubscribe = emitter.subscribe(lambda event, payload: seen.append(event))

    unsubscribe()
    unsubscribe()
    emitter.emit(WorkerEvent.ERROR, {"error": "boom"})

    assert seen == []
    assert emitter.listener_count() == 0


def test_failing_listener_does_not_stop_others():
    emitter = EventEmitter()
    seen = []

    def broken(event, payload):
        raise RuntimeError("listener bug")

    emitter.subscribe(broken)
    emitter.subscribe(lambda event, payload: seen.append(event))

    emitter.emit(WorkerEvent.JOB_COMPLETED, {"job_id": "job-1"})

    assert seen == [WorkerEvent.JOB_COMPLETED]
