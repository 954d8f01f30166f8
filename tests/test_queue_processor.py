import threading
import time

import pytest

from facesync.errors import TaskTimeoutError
from facesync.queue_processor import QueueProcessor


@pytest.fixture
def processor():
    q = QueueProcessor(name="test-queue")
    yield q
    q.shutdown(cancel_pending=True)


def test_results_in_submission_order_without_overlap(processor):
    running = []
    overlap = []
    lock = threading.Lock()
    finished = []

    def task(i):
        def run():
            with lock:
                running.append(i)
                if len(running) > 1:
                    overlap.append(i)
            time.sleep(0.01)
            with lock:
                running.remove(i)
                finished.append(i)
            return i * 10
        return run

    handles = [processor.queue_up_request(task(i)) for i in range(5)]
    assert [h.result(timeout=5) for h in handles] == [0, 10, 20, 30, 40]
    assert finished == [0, 1, 2, 3, 4]
    assert overlap == []


def test_task_error_propagates_and_queue_continues(processor):
    def boom():
        raise KeyError("missing")

    failing = processor.queue_up_request(boom)
    ok = processor.queue_up_request(lambda: "fine")
    with pytest.raises(KeyError):
        failing.result(timeout=5)
    assert ok.result(timeout=5) == "fine"


def test_timeout_abandons_task_and_runs_next(processor):
    release = threading.Event()
    events = []

    def slow():
        release.wait(5)
        events.append("slow done")
        return "late"

    def following():
        events.append("next")
        return "next"

    slow_handle = processor.queue_up_request(slow, timeout=0.05)
    next_handle = processor.queue_up_request(following)
    with pytest.raises(TaskTimeoutError):
        slow_handle.result(timeout=2)
    # The queue does not wait for the abandoned call.
    assert next_handle.result(timeout=2) == "next"
    assert events == ["next"]

    release.set()
    deadline = time.time() + 5
    while len(events) < 2 and time.time() < deadline:
        time.sleep(0.01)
    assert events == ["next", "slow done"]
    # The late result never reaches the caller.
    with pytest.raises(TaskTimeoutError):
        slow_handle.result(timeout=0)


def test_timeout_error_is_distinct_from_task_error(processor):
    def raises_timeout():
        raise TimeoutError("inner")

    handle = processor.queue_up_request(raises_timeout, timeout=5)
    with pytest.raises(TimeoutError) as info:
        handle.result(timeout=5)
    assert not isinstance(info.value, TaskTimeoutError)


def test_cancelled_request_never_runs(processor):
    gate = threading.Event()
    ran = []
    blocker = processor.queue_up_request(lambda: gate.wait(5))
    pending = processor.queue_up_request(lambda: ran.append("pending"))
    assert pending.cancel()
    gate.set()
    blocker.result(timeout=5)
    processor.queue_up_request(lambda: None).result(timeout=5)
    assert ran == []
    assert pending.future.cancelled()


def test_cannot_cancel_finished_request(processor):
    handle = processor.queue_up_request(lambda: 1)
    assert handle.result(timeout=5) == 1
    assert not handle.cancel()


def test_shutdown_runs_queued_work_and_rejects_new():
    q = QueueProcessor()
    handle = q.queue_up_request(lambda: "queued")
    q.shutdown()
    assert handle.result(timeout=5) == "queued"
    with pytest.raises(RuntimeError):
        q.queue_up_request(lambda: None)
