from datetime import datetime

import pytest

from namesync.jobs.queue import next_fire_time
from namesync.jobs.scheduler import run_schedules
from namesync.workers.registry import install_schedules


def test_next_fire_time_is_strictly_after():
    at = datetime(2026, 1, 1, 12, 0, 0)
    assert next_fire_time("*/5 * * * *", "UTC", at) == datetime(2026, 1, 1, 12, 5, 0)
    assert next_fire_time("0 2 * * *", "UTC", at) == datetime(2026, 1, 2, 2, 0, 0)


def test_invalid_cron_is_rejected(rt):
    with pytest.raises(ValueError):
        rt.queue.schedule("batch-expire-orders", "not a cron")


def test_at_most_one_open_instance(rt, clock):
    q = rt.queue
    q.schedule("refresh-analytics", "*/15 * * * *", {"view_name": None})
    assert run_schedules(q) == []

    clock.advance(15 * 60)
    [(name, first)] = run_schedules(q)
    assert name == "refresh-analytics" and first

    # still pending at the next tick: no second instance
    clock.advance(15 * 60)
    assert run_schedules(q) == [("refresh-analytics", None)]
    assert q.queue_size("refresh-analytics") == 1

    [job] = q.claim("refresh-analytics")
    q.complete(job.id)
    clock.advance(15 * 60)
    [(_, second)] = run_schedules(q)
    assert second and second != first


def test_default_schedules(rt):
    installed = install_schedules(rt.queue, rt.settings)
    assert set(installed) == {"batch-expire-orders", "schedule-daily-metadata-sync", "refresh-analytics", "reconcile-index"}
    by_name = {s["name"]: s for s in rt.queue.schedules()}
    assert by_name["batch-expire-orders"]["cron"] == "*/5 * * * *"
    assert by_name["reconcile-index"]["payload"] == {"mode": "full"}

    assert rt.queue.unschedule("refresh-analytics")
    assert not rt.queue.unschedule("refresh-analytics")
