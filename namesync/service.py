from __future__ import annotations
import logging
import signal
import threading
from typing import Any, Callable, Dict, List, Optional

from elasticsearch import Elasticsearch

from namesync.changes import ChangeProcessor
from namesync.config import Settings
from namesync.db import Store, utcnow
from namesync.jobs.queue import JobQueue
from namesync.jobs.scheduler import run_schedules
from namesync.jobs.worker import WorkerPool
from namesync.listener import ChangeListener, PgNotificationSource, libpq_dsn
from namesync.mailer import EmailSender
from namesync.metadata_client import MetadataClient
from namesync.search.synchronizer import IndexSynchronizer, make_client
from namesync.workers.registry import install_schedules, queue_definitions

log = logging.getLogger(__name__)


class Runtime:
    """Every long-lived client, built once per process and handed to the components that need it."""

    def __init__(self, settings: Settings, store: Optional[Store] = None, es: Optional[Elasticsearch] = None,
                 sender: Optional[EmailSender] = None, metadata: Optional[MetadataClient] = None,
                 clock: Callable = utcnow):
        self.settings = settings
        self.clock = clock
        self.store = store or Store(settings.DATABASE_URL)
        self.es = es if es is not None else make_client(settings)
        self.sender = sender or EmailSender(settings)
        self.metadata = metadata or MetadataClient(settings)
        self.queue = JobQueue(self.store, settings, clock)
        self.sync = IndexSynchronizer(self.es, self.store, settings)
        self.processor = ChangeProcessor(self.store, self.sync, self.queue)

    def close(self) -> None:
        for closer in (self.metadata.close, self.es.close, self.store.close):
            try:
                closer()
            except Exception:
                log.warning("error during shutdown", exc_info=True)


def install_signal_handlers(stop: threading.Event) -> None:
    def _handler(signum, _frame):
        log.info("received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def maintenance_tick(rt: Runtime) -> Dict[str, Any]:
    fired = run_schedules(rt.queue)
    reaped = rt.queue.reap_expired()
    archived = rt.queue.archive()
    if reaped:
        log.warning("reaped %d expired claims", reaped)
    return {"fired": [name for name, job_id in fired if job_id], "reaped": reaped, **archived}


def run_workers(rt: Runtime, stop: threading.Event, queues: Optional[List[str]] = None,
                maintenance: bool = True) -> List[WorkerPool]:
    defs = [d for d in queue_definitions(rt) if not queues or d.name in queues]
    pools = [
        WorkerPool(rt.queue, d.name, d.handler, d.pool_size, d.concurrency, rt.settings.JOB_POLL_SECONDS)
        for d in defs
    ]
    if maintenance:
        install_schedules(rt.queue, rt.settings)
    for p in pools:
        p.start()
    log.info("workers running for %s", ", ".join(d.name for d in defs))

    try:
        while not stop.is_set():
            if maintenance:
                try:
                    maintenance_tick(rt)
                except Exception:
                    log.exception("maintenance tick failed")
            stop.wait(rt.settings.MAINTENANCE_INTERVAL_SECONDS)
    finally:
        clean = True
        for p in pools:
            p.request_stop()
        for p in pools:
            clean = p.stop(rt.settings.SHUTDOWN_GRACE_SECONDS) and clean
        log.info("workers stopped%s", "" if clean else " (some jobs left to claim expiry)")
    return pools


def run_listener(rt: Runtime, stop: threading.Event) -> ChangeListener:
    source = PgNotificationSource(libpq_dsn(rt.settings.DATABASE_URL), rt.settings.NOTIFY_CHANNEL)
    listener = ChangeListener(source, rt.processor, rt.queue, rt.settings)
    listener.run(stop)
    return listener
