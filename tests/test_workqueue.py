import threading
import time

import pytest

from computedomain_dra.errors import PermanentError
from computedomain_dra.workqueue import WorkQueue


def obj(name, version="1"):
    return {"metadata": {"name": name, "namespace": "team-a", "resourceVersion": version}}


@pytest.fixture
def queue():
    queue = WorkQueue(workers=4, base_delay=0.01, max_delay=0.05)
    queue.start()
    yield queue
    queue.stop()


def test_callback_runs(queue) -> None:
    done = threading.Event()
    queue.enqueue(obj("a"), lambda o: done.set())
    assert done.wait(5)


def test_failed_callback_is_retried(queue) -> None:
    attempts = []
    done = threading.Event()

    def callback(o):
        attempts.append(o)
        if len(attempts) < 3:
            raise RuntimeError("not yet")
        done.set()

    queue.enqueue(obj("a"), callback)
    assert done.wait(5)
    assert len(attempts) == 3


def test_permanent_error_is_not_retried(queue) -> None:
    attempts = []

    def callback(o):
        attempts.append(o)
        raise RuntimeError("wrapped") from PermanentError("bad spec")

    queue.enqueue(obj("a"), callback)
    time.sleep(0.3)
    assert len(attempts) == 1


def test_same_key_never_runs_concurrently(queue) -> None:
    lock = threading.Lock()
    running = []
    seen = []
    overlap = []

    def callback(o):
        with lock:
            if running:
                overlap.append(o)
            running.append(o)
        time.sleep(0.05)
        with lock:
            running.remove(o)
            seen.append(o["metadata"]["resourceVersion"])

    for i in range(5):
        queue.enqueue(obj("a", version=str(i)), callback)
        time.sleep(0.01)

    deadline = time.monotonic() + 5
    while (not seen or seen[-1] != "4") and time.monotonic() < deadline:
        time.sleep(0.01)
    assert overlap == []
    assert seen[-1] == "4"


def test_different_keys_run_concurrently(queue) -> None:
    barrier = threading.Barrier(2, timeout=5)
    passed = []

    def callback(o):
        barrier.wait()
        passed.append(o)

    queue.enqueue(obj("a"), callback)
    queue.enqueue(obj("b"), callback)

    deadline = time.monotonic() + 5
    while len(passed) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert len(passed) == 2


def test_backoff_grows_and_caps() -> None:
    queue = WorkQueue(base_delay=0.005, max_delay=1000.0)
    assert queue.backoff("team-a/a") == 0.005
    queue._failures["team-a/a"] = 3
    assert queue.backoff("team-a/a") == pytest.approx(0.04)
    queue._failures["team-a/a"] = 40
    assert queue.backoff("team-a/a") == 1000.0
