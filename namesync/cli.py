from __future__ import annotations
import argparse
import logging
import sys
import threading

import orjson

from namesync.config import settings
from namesync.errors import ListenerFatal, SchemaMismatch
from namesync.logs import configure_logging

log = logging.getLogger("namesync")


def _print(obj) -> None:
    print(orjson.dumps(obj, option=orjson.OPT_INDENT_2, default=str).decode("utf-8"))


def _runtime():
    from namesync.service import Runtime
    return Runtime(settings)


def cmd_init_db(args):
    from namesync.db import Store
    store = Store(settings.DATABASE_URL)
    store.init_db()
    store.close()
    _print({"initialized": settings.DATABASE_URL.rsplit("@", 1)[-1]})


def cmd_setup_cdc(args):
    from namesync.db import Store
    from namesync import notifier
    store = Store(settings.DATABASE_URL)
    try:
        if args.remove:
            notifier.remove_triggers(store.engine, settings.WATCHED_TABLES)
            _print({"removed": settings.WATCHED_TABLES})
        else:
            n = notifier.install_triggers(store.engine, settings.WATCHED_TABLES, settings.NOTIFY_CHANNEL,
                                          settings.NOTIFY_MAX_PAYLOAD_BYTES)
            _print({"tables": n, "channel": settings.NOTIFY_CHANNEL})
    finally:
        store.close()


def cmd_ensure_index(args):
    rt = _runtime()
    try:
        _print({"index": settings.ELASTICSEARCH_INDEX, "result": rt.sync.ensure_schema()})
    except SchemaMismatch as e:
        log.error("%s; run `namesync recreate-index --yes` then `namesync resync`", e)
        sys.exit(2)
    finally:
        rt.close()


def cmd_recreate_index(args):
    if not args.yes:
        print("recreate-index drops every document; pass --yes to confirm", file=sys.stderr)
        sys.exit(2)
    rt = _runtime()
    try:
        rt.sync.recreate_schema()
        report = rt.sync.bulk_reconcile() if args.resync else None
        _print({"index": settings.ELASTICSEARCH_INDEX, "recreated": True, "resync": report})
    finally:
        rt.close()


def cmd_resync(args):
    rt = _runtime()
    try:
        rt.sync.ensure_schema()
        _print(rt.sync.bulk_reconcile())
    finally:
        rt.close()


def cmd_scan_orphans(args):
    rt = _runtime()
    try:
        orphans = rt.sync.scan_orphans()
        deleted = rt.sync.delete_orphans(orphans) if args.delete else 0
        _print({"orphans": orphans, "deleted": deleted})
    finally:
        rt.close()


def cmd_scan_drift(args):
    rt = _runtime()
    try:
        _print(rt.sync.scan_drift(repair=args.repair))
    finally:
        rt.close()


def cmd_listen(args):
    from namesync.service import install_signal_handlers, run_listener
    rt = _runtime()
    stop = threading.Event()
    install_signal_handlers(stop)
    try:
        listener = run_listener(rt, stop)
        _print({"processed": listener.processed, "skipped": listener.skipped,
                "dropped": listener.dropped, "reconnects": listener.reconnects})
    except ListenerFatal as e:
        log.critical("%s", e)
        sys.exit(1)
    finally:
        rt.close()


def cmd_work(args):
    from namesync.service import install_signal_handlers, run_workers
    rt = _runtime()
    stop = threading.Event()
    install_signal_handlers(stop)
    queues = [q.strip() for q in args.queues.split(",")] if args.queues else None
    try:
        run_workers(rt, stop, queues=queues, maintenance=not args.no_maintenance)
    finally:
        rt.close()


def cmd_enqueue(args):
    rt = _runtime()
    try:
        payload = orjson.loads(args.payload)
        opts = {}
        if args.singleton_key:
            opts["singleton_key"] = args.singleton_key
        if args.priority:
            opts["priority"] = args.priority
        _print({"queue": args.queue, "job_id": rt.queue.enqueue(args.queue, payload, **opts)})
    finally:
        rt.close()


def cmd_schedules(args):
    from namesync.workers.registry import install_schedules
    rt = _runtime()
    try:
        if args.install:
            install_schedules(rt.queue, settings)
        _print(rt.queue.schedules())
    finally:
        rt.close()


def cmd_jobs(args):
    rt = _runtime()
    try:
        if args.job_id:
            job = rt.queue.get(args.job_id)
            _print(job.model_dump() if job else None)
        else:
            _print(rt.queue.state_counts(args.queue))
    finally:
        rt.close()


def cmd_api(args):
    import uvicorn
    from namesync.api import create_app
    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)


def main():
    configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    p = argparse.ArgumentParser(prog="namesync")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("init-db", help="create store tables")
    s.set_defaults(fn=cmd_init_db)

    s = sub.add_parser("setup-cdc", help="install change triggers")
    s.add_argument("--remove", action="store_true")
    s.set_defaults(fn=cmd_setup_cdc)

    s = sub.add_parser("ensure-index")
    s.set_defaults(fn=cmd_ensure_index)

    s = sub.add_parser("recreate-index", help="drop and recreate the search index")
    s.add_argument("--yes", action="store_true")
    s.add_argument("--resync", action="store_true", help="reindex everything afterwards")
    s.set_defaults(fn=cmd_recreate_index)

    s = sub.add_parser("resync", help="full bulk reconciliation")
    s.set_defaults(fn=cmd_resync)

    s = sub.add_parser("scan-orphans")
    s.add_argument("--delete", action="store_true")
    s.set_defaults(fn=cmd_scan_orphans)

    s = sub.add_parser("scan-drift")
    s.add_argument("--repair", action="store_true")
    s.set_defaults(fn=cmd_scan_drift)

    s = sub.add_parser("listen", help="run the change listener")
    s.set_defaults(fn=cmd_listen)

    s = sub.add_parser("work", help="run job workers and the scheduler")
    s.add_argument("--queues", help="comma separated, default all")
    s.add_argument("--no-maintenance", action="store_true", help="skip schedules, reaping and archiving")
    s.set_defaults(fn=cmd_work)

    s = sub.add_parser("enqueue")
    s.add_argument("queue")
    s.add_argument("--payload", default="{}")
    s.add_argument("--singleton-key")
    s.add_argument("--priority", type=int, default=0)
    s.set_defaults(fn=cmd_enqueue)

    s = sub.add_parser("schedules")
    s.add_argument("--install", action="store_true")
    s.set_defaults(fn=cmd_schedules)

    s = sub.add_parser("jobs")
    s.add_argument("--queue")
    s.add_argument("--job-id")
    s.set_defaults(fn=cmd_jobs)

    s = sub.add_parser("api", help="serve /health and /metrics")
    s.add_argument("--host", default=settings.API_HOST)
    s.add_argument("--port", type=int, default=settings.API_PORT)
    s.set_defaults(fn=cmd_api)

    args = p.parse_args()
    args.fn(args)


if __name__ == "__main__":
    main()
