from __future__ import annotations
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from namesync.backoff import backoff_delay
from namesync.errors import PermanentError
from namesync.jobs.queue import JobQueue
from namesync.schemas import JobRecord

log = logging.getLogger(__name__)

Handler = Callable[[JobRecord], Optional[Dict[str, Any]]]

MAX_BACKOFF_SECONDS = 60.0


class WorkerPool:
    """pool_size claim loops for one queue, each running up to `concurrency` jobs at a time."""

    def __init__(self, queue: JobQueue, name: str, handler: Handler, pool_size: int = 1,
                 concurrency: int = 1, poll_interval: float = 2.0):
        self.queue = queue
        self.name = name
        self.handler = handler
        self.pool_size = max(1, pool_size)
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self.processed = 0
        self._lock = threading.Lock()

    def execute(self, job: JobRecord) -> str:
        extra = {"queue": self.name, "job_id": job.id}
        try:
            output = self.handler(job)
        except (ValidationError, PermanentError) as e:
            log.error("job %s rejected: %s", job.id, e, extra=extra)
            state = self.queue.fail(job.id, f"{type(e).__name__}: {e}", permanent=True, claim_id=job.claim_id)
        except Exception as e:
            log.exception("job %s raised", job.id, extra=extra)
            state = self.queue.fail(job.id, f"{type(e).__name__}: {e}", claim_id=job.claim_id)
        else:
            self.queue.complete(job.id, output, claim_id=job.claim_id)
            state = "completed"
        with self._lock:
            self.processed += 1
        return state or "unknown"

    def run_once(self) -> int:
        """Claim and run one round synchronously. Returns the number of jobs run."""
        jobs = self.queue.claim(self.name, self.pool_size * self.concurrency)
        for job in jobs:
            self.execute(job)
        return len(jobs)

    def _backoff(self, failures: int) -> None:
        self._stop.wait(backoff_delay(failures - 1, self.poll_interval, MAX_BACKOFF_SECONDS))

    def _loop(self) -> None:
        failures = 0
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=f"{self.name}-job") as ex:
            while not self._stop.is_set():
                try:
                    jobs = self.queue.claim(self.name, self.concurrency)
                    if not jobs:
                        failures = 0
                        self._stop.wait(self.poll_interval)
                        continue
                    # in-flight jobs always finish; stop only prevents the next claim
                    list(ex.map(self.execute, jobs))
                except Exception:
                    # store trouble while claiming or recording a result; unrecorded jobs
                    # stay active until reap_expired() hands them back
                    failures += 1
                    log.exception("worker loop error on %s (%d in a row)", self.name, failures,
                                  extra={"queue": self.name})
                    self._backoff(failures)
                    continue
                failures = 0

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.pool_size):
            t = threading.Thread(target=self._loop, name=f"{self.name}-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        log.info("worker pool %s started (%dx%d)", self.name, self.pool_size, self.concurrency)

    def request_stop(self) -> None:
        self._stop.set()

    def stop(self, grace_seconds: float = 30.0) -> bool:
        """Stop claiming and wait for in-flight jobs. False if some thread outlived the grace period."""
        self.request_stop()
        deadline = time.monotonic() + grace_seconds
        for t in self._threads:
            t.join(max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            log.warning("worker pool %s: %s still running after %.0fs; claims will expire", self.name, alive, grace_seconds)
        self._threads = []
        return not alive
