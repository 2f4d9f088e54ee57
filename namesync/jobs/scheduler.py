from __future__ import annotations
import logging
from typing import List, Optional, Tuple

from sqlalchemy import select, update

from namesync.jobs.queue import JobQueue, next_fire_time, schedules_t

log = logging.getLogger(__name__)


def run_schedules(queue: JobQueue) -> List[Tuple[str, Optional[str]]]:
    """One scheduler tick. Due schedules enqueue one instance unless one is still open.

    The schedule row is locked for the duration so concurrent ticks on other
    processes skip it instead of double-firing.
    """
    now = queue.clock()
    fired: List[Tuple[str, Optional[str]]] = []
    with queue.store.engine.begin() as conn:
        due = conn.execute(
            select(schedules_t)
            .where(schedules_t.c.next_run_at <= now)
            .order_by(schedules_t.c.name)
            .with_for_update(skip_locked=True)
        ).mappings().all()
        for sch in due:
            opts = dict(sch["options"] or {})
            opts.setdefault("singleton_key", sch["name"])
            job_id = queue.insert_job(conn, sch["name"], dict(sch["payload"] or {}), opts)
            conn.execute(
                update(schedules_t)
                .where(schedules_t.c.name == sch["name"])
                .values(last_run_at=now, next_run_at=next_fire_time(sch["cron"], sch["timezone"], now))
            )
            if job_id is None:
                log.info("schedule %s skipped: previous instance still open", sch["name"])
            else:
                log.info("schedule %s fired job %s", sch["name"], job_id, extra={"queue": sch["name"], "job_id": job_id})
            fired.append((sch["name"], job_id))
    return fired
