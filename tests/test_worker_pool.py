import threading
import time

from sqlalchemy.exc import OperationalError

from namesync.errors import PermanentError
from namesync.jobs.worker import WorkerPool
from namesync.schemas import ExpireOrder


def test_run_once_completes_jobs(rt):
    seen = []
    pool = WorkerPool(rt.queue, "q", lambda job: seen.append(job.payload["n"]) or {"n": job.payload["n"]},
                      pool_size=2, concurrency=2)
    for n in range(3):
        rt.queue.enqueue("q", {"n": n})
    assert pool.run_once() == 3
    assert sorted(seen) == [0, 1, 2]
    assert {j.state for j in rt.queue.find("q")} == {"completed"}
    assert pool.processed == 3


def test_bad_payload_fails_without_retry(rt):
    def handler(job):
        ExpireOrder.model_validate(job.payload)

    pool = WorkerPool(rt.queue, "q", handler)
    job_id = rt.queue.enqueue("q", {"order_type": "auction", "order_id": 1})
    pool.run_once()
    job = rt.queue.get(job_id)
    assert job.state == "failed"
    assert job.last_error.startswith("ValidationError")


def test_permanent_error_fails_without_retry(rt):
    def handler(job):
        raise PermanentError("gone for good")

    job_id = rt.queue.enqueue("q", {})
    WorkerPool(rt.queue, "q", handler).run_once()
    assert rt.queue.get(job_id).state == "failed"


def test_other_errors_are_retried(rt):
    def handler(job):
        raise RuntimeError("flaky")

    job_id = rt.queue.enqueue("q", {})
    WorkerPool(rt.queue, "q", handler).run_once()
    job = rt.queue.get(job_id)
    assert job.state == "retry" and job.retry_count == 1
    assert "flaky" in job.last_error


def test_started_pool_drains_queue_and_stops(rt):
    done = threading.Event()
    count = []

    def handler(job):
        count.append(job.id)
        if len(count) == 4:
            done.set()

    for n in range(4):
        rt.queue.enqueue("q", {"n": n})
    pool = WorkerPool(rt.queue, "q", handler, pool_size=2, concurrency=2, poll_interval=0.01)
    pool.start()
    try:
        assert done.wait(10)
    finally:
        assert pool.stop(grace_seconds=5)
    # stop() returns only after in-flight jobs are recorded
    jobs = rt.queue.find("q")
    assert sorted(count) == sorted(j.id for j in jobs)
    assert {j.state for j in jobs} == {"completed"}


def test_loop_survives_store_error_while_recording(rt, monkeypatch):
    real_complete = rt.queue.complete
    calls = []

    def flaky_complete(job_id, output=None, claim_id=None):
        calls.append(job_id)
        if len(calls) == 1:
            raise OperationalError("UPDATE jobs", {}, Exception("server closed the connection"))
        return real_complete(job_id, output, claim_id=claim_id)

    monkeypatch.setattr(rt.queue, "complete", flaky_complete)
    pool = WorkerPool(rt.queue, "q", lambda job: {"n": job.payload["n"]}, poll_interval=0.01)
    first = rt.queue.enqueue("q", {"n": 1})
    pool.start()
    try:
        for _ in range(500):
            if calls:
                break
            time.sleep(0.01)
        second = rt.queue.enqueue("q", {"n": 2})
        for _ in range(500):
            if rt.queue.get(second).state == "completed":
                break
            time.sleep(0.01)
        assert rt.queue.get(second).state == "completed"
        assert all(t.is_alive() for t in pool._threads)
    finally:
        assert pool.stop(grace_seconds=5)
    # unrecorded result: left for the reaper
    assert rt.queue.get(first).state == "active"
