"""
Table-backed durable job queue.

Jobs move created -> active -> completed, or active -> retry -> active while
retries remain, or to failed once they are exhausted (or the error is
permanent). Claims use a single UPDATE over a SKIP LOCKED sub-select so two
workers can never hold the same job.
"""
from __future__ import annotations
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from namesync.config import Settings
from namesync.db import Store, utcnow
from namesync.models import ArchivedJob, Job, JobSchedule
from namesync.schemas import JobRecord

log = logging.getLogger(__name__)

PENDING_STATES = ("created", "retry")
OPEN_STATES = ("created", "retry", "active")
TERMINAL_STATES = ("completed", "failed", "cancelled")

jobs_t = Job.__table__
archive_t = ArchivedJob.__table__
schedules_t = JobSchedule.__table__

_OPTION_KEYS = ("singleton_key", "priority", "start_after", "retry_limit", "retry_delay", "retry_backoff", "expire_in_seconds")


def retry_delay_seconds(retry_delay: int, retry_count: int, backoff: bool) -> int:
    if not backoff:
        return retry_delay
    return retry_delay * (2 ** retry_count)


class JobQueue:
    def __init__(self, store: Store, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.s = settings
        self.clock = clock

    # -- producing ------------------------------------------------------

    def _row(self, queue: str, payload: Dict[str, Any], opts: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(opts) - set(_OPTION_KEYS)
        if unknown:
            raise ValueError(f"unknown job options: {sorted(unknown)}")
        now = self.clock()
        return {
            "id": str(uuid.uuid4()),
            "queue": queue,
            "payload": payload,
            "state": "created",
            "priority": opts.get("priority", 0),
            "retry_count": 0,
            "retry_limit": opts.get("retry_limit", self.s.JOB_RETRY_LIMIT),
            "retry_delay": opts.get("retry_delay", self.s.JOB_RETRY_DELAY_SECONDS),
            "retry_backoff": opts.get("retry_backoff", self.s.JOB_RETRY_BACKOFF),
            "expire_in_seconds": opts.get("expire_in_seconds", self.s.JOB_EXPIRE_SECONDS),
            "singleton_key": opts.get("singleton_key"),
            "start_after": opts.get("start_after") or now,
            "created_at": now,
        }

    def _open_singleton_exists(self, conn: Connection, queue: str, key: Optional[str]) -> bool:
        if not key:
            return False
        hit = conn.execute(
            select(jobs_t.c.id).where(
                jobs_t.c.queue == queue,
                jobs_t.c.singleton_key == key,
                jobs_t.c.state.in_(OPEN_STATES),
            ).limit(1)
        ).first()
        return hit is not None

    def insert_job(self, conn: Connection, queue: str, payload: Dict[str, Any], opts: Dict[str, Any]) -> Optional[str]:
        if self._open_singleton_exists(conn, queue, opts.get("singleton_key")):
            log.debug("singleton %s already open on %s", opts.get("singleton_key"), queue)
            return None
        values = self._row(queue, payload, opts)
        conn.execute(insert(jobs_t).values(**values))
        return values["id"]

    def enqueue(self, queue: str, payload: Dict[str, Any], **opts) -> Optional[str]:
        """Returns the new job id, or None when an open job with the same singleton_key exists."""
        try:
            with self.store.engine.begin() as conn:
                job_id = self.insert_job(conn, queue, payload, opts)
        except IntegrityError:
            # lost a race on the singleton index
            return None
        if job_id:
            log.debug("enqueued %s on %s", job_id, queue, extra={"queue": queue, "job_id": job_id})
        return job_id

    def enqueue_many(self, jobs: Iterable[Dict[str, Any]]) -> List[Optional[str]]:
        """jobs: dicts with queue, payload and optional options. One transaction."""
        jobs = list(jobs)
        try:
            with self.store.engine.begin() as conn:
                return [self.insert_job(conn, j["queue"], j["payload"], dict(j.get("options") or {})) for j in jobs]
        except IntegrityError:
            log.info("singleton conflict in batch of %d, enqueueing one by one", len(jobs))
            return [self.enqueue(j["queue"], j["payload"], **dict(j.get("options") or {})) for j in jobs]

    # -- consuming ------------------------------------------------------

    def claim(self, queue: str, batch_size: int = 1) -> List[JobRecord]:
        now = self.clock()
        candidates = (
            select(jobs_t.c.id)
            .where(jobs_t.c.queue == queue, jobs_t.c.state.in_(PENDING_STATES), jobs_t.c.start_after <= now)
            .order_by(jobs_t.c.priority.desc(), jobs_t.c.created_at, jobs_t.c.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(jobs_t)
            .where(jobs_t.c.id.in_(candidates.scalar_subquery()), jobs_t.c.state.in_(PENDING_STATES))
            .values(state="active", started_at=now, claim_id=str(uuid.uuid4()))
            .returning(*jobs_t.c)
        )
        with self.store.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        claimed = [JobRecord.model_validate(dict(r)) for r in rows]
        claimed.sort(key=lambda j: (-j.priority, j.created_at, j.id))
        return claimed

    @staticmethod
    def _held(job_id: str, claim_id: Optional[str]):
        """Active job, and when claim_id is given, still under that claim."""
        cond = [jobs_t.c.id == job_id, jobs_t.c.state == "active"]
        if claim_id is not None:
            cond.append(jobs_t.c.claim_id == claim_id)
        return cond

    def complete(self, job_id: str, output: Optional[Dict[str, Any]] = None, claim_id: Optional[str] = None) -> bool:
        with self.store.engine.begin() as conn:
            res = conn.execute(
                update(jobs_t)
                .where(*self._held(job_id, claim_id))
                .values(state="completed", completed_at=self.clock(), output=output)
            )
        if res.rowcount != 1:
            log.warning("completion of %s ignored: claim no longer held", job_id, extra={"job_id": job_id})
        return res.rowcount == 1

    def fail(self, job_id: str, error: str, permanent: bool = False, claim_id: Optional[str] = None) -> Optional[str]:
        """Returns the state the job ended in, or None if it was not active (or claimed by someone else)."""
        now = self.clock()
        with self.store.engine.begin() as conn:
            row = conn.execute(
                select(jobs_t).where(*self._held(job_id, claim_id)).with_for_update()
            ).mappings().first()
            if row is None:
                return None
            if permanent or row["retry_count"] >= row["retry_limit"]:
                values = {"state": "failed", "completed_at": now, "last_error": error}
            else:
                delay = retry_delay_seconds(row["retry_delay"], row["retry_count"], row["retry_backoff"])
                values = {
                    "state": "retry",
                    "retry_count": row["retry_count"] + 1,
                    "start_after": now + timedelta(seconds=delay),
                    "started_at": None,
                    "claim_id": None,
                    "last_error": error,
                }
            conn.execute(update(jobs_t).where(*self._held(job_id, row["claim_id"])).values(**values))
        if values["state"] == "failed":
            log.error("job %s on %s failed: %s", job_id, row["queue"], error, extra={"queue": row["queue"], "job_id": job_id})
        else:
            log.warning("job %s on %s will retry (%d/%d): %s", job_id, row["queue"], values["retry_count"],
                        row["retry_limit"], error, extra={"queue": row["queue"], "job_id": job_id})
        return values["state"]

    def cancel(self, job_id: str) -> bool:
        with self.store.engine.begin() as conn:
            res = conn.execute(
                update(jobs_t)
                .where(jobs_t.c.id == job_id, jobs_t.c.state.in_(OPEN_STATES))
                .values(state="cancelled", completed_at=self.clock())
            )
        return res.rowcount == 1

    # -- maintenance ----------------------------------------------------

    def reap_expired(self) -> int:
        """Claims held past their expiry go back through fail() as transient errors."""
        now = self.clock()
        with self.store.engine.connect() as conn:
            rows = conn.execute(
                select(jobs_t.c.id, jobs_t.c.claim_id, jobs_t.c.started_at, jobs_t.c.expire_in_seconds)
                .where(jobs_t.c.state == "active")
            ).all()
        reaped = 0
        for job_id, claim_id, started_at, expire_in in rows:
            if started_at is not None and started_at + timedelta(seconds=expire_in) <= now:
                if self.fail(job_id, f"expired after {expire_in}s", claim_id=claim_id):
                    reaped += 1
        return reaped

    def archive(self) -> Dict[str, int]:
        now = self.clock()
        cutoff = now - timedelta(seconds=self.s.ARCHIVE_COMPLETED_AFTER_SECONDS)
        purge_before = now - timedelta(days=self.s.ARCHIVE_DELETE_AFTER_DAYS)
        cols = [c.name for c in archive_t.c if c.name != "archived_at"]
        with self.store.engine.begin() as conn:
            rows = conn.execute(
                select(*[jobs_t.c[c] for c in cols]).where(
                    jobs_t.c.state.in_(TERMINAL_STATES), jobs_t.c.completed_at <= cutoff
                )
            ).mappings().all()
            if rows:
                conn.execute(insert(archive_t), [dict(r, archived_at=now) for r in rows])
                conn.execute(delete(jobs_t).where(jobs_t.c.id.in_([r["id"] for r in rows])))
            # failed jobs stay in the archive for inspection
            purged = conn.execute(
                delete(archive_t).where(
                    archive_t.c.state.in_(("completed", "cancelled")), archive_t.c.archived_at < purge_before
                )
            ).rowcount
        return {"archived": len(rows), "purged": purged or 0}

    # -- inspection -----------------------------------------------------

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self.store.engine.connect() as conn:
            row = conn.execute(select(jobs_t).where(jobs_t.c.id == job_id)).mappings().first()
            if row is None:
                row = conn.execute(select(archive_t).where(archive_t.c.id == job_id)).mappings().first()
        return JobRecord.model_validate(dict(row)) if row else None

    def find(self, queue: str, state: Optional[str] = None, limit: int = 100) -> List[JobRecord]:
        stmt = select(jobs_t).where(jobs_t.c.queue == queue)
        if state:
            stmt = stmt.where(jobs_t.c.state == state)
        stmt = stmt.order_by(jobs_t.c.created_at, jobs_t.c.id).limit(limit)
        with self.store.engine.connect() as conn:
            return [JobRecord.model_validate(dict(r)) for r in conn.execute(stmt).mappings()]

    def queue_size(self, queue: str) -> int:
        with self.store.engine.connect() as conn:
            return int(conn.execute(
                select(func.count()).select_from(jobs_t).where(
                    jobs_t.c.queue == queue, jobs_t.c.state.in_(PENDING_STATES)
                )
            ).scalar_one())

    def state_counts(self, queue: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        stmt = select(jobs_t.c.queue, jobs_t.c.state, func.count()).group_by(jobs_t.c.queue, jobs_t.c.state)
        if queue:
            stmt = stmt.where(jobs_t.c.queue == queue)
        out: Dict[str, Dict[str, int]] = {}
        with self.store.engine.connect() as conn:
            for q, state, n in conn.execute(stmt):
                out.setdefault(q, {})[state] = int(n)
        return out

    # -- schedules ------------------------------------------------------

    def schedule(self, queue: str, cron: str, payload: Optional[Dict[str, Any]] = None,
                 options: Optional[Dict[str, Any]] = None, tz: str = "UTC") -> datetime:
        next_run = next_fire_time(cron, tz, self.clock())
        values = {
            "cron": cron,
            "timezone": tz,
            "payload": payload or {},
            "options": options or {},
            "next_run_at": next_run,
            "updated_at": self.clock(),
        }
        with self.store.engine.begin() as conn:
            res = conn.execute(update(schedules_t).where(schedules_t.c.name == queue).values(**values))
            if res.rowcount == 0:
                conn.execute(insert(schedules_t).values(name=queue, created_at=self.clock(), **values))
        log.info("scheduled %s with %r, next run %s", queue, cron, next_run.isoformat())
        return next_run

    def unschedule(self, queue: str) -> bool:
        with self.store.engine.begin() as conn:
            return conn.execute(delete(schedules_t).where(schedules_t.c.name == queue)).rowcount == 1

    def schedules(self) -> List[Dict[str, Any]]:
        with self.store.engine.connect() as conn:
            return [dict(r) for r in conn.execute(select(schedules_t).order_by(schedules_t.c.name)).mappings()]


def next_fire_time(cron: str, tz: str, after: datetime) -> datetime:
    """Next cron fire strictly after `after` (naive UTC in, naive UTC out)."""
    trigger = CronTrigger.from_crontab(cron, timezone=tz)
    aware = after.replace(tzinfo=timezone.utc) + timedelta(seconds=1)
    nxt = trigger.get_next_fire_time(None, aware)
    return nxt.astimezone(timezone.utc).replace(tzinfo=None)
