from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Tuple, TYPE_CHECKING

from namesync.config import Settings
from namesync.jobs import names
from namesync.jobs.queue import JobQueue
from namesync.jobs.worker import Handler
from namesync.workers.analytics import AnalyticsWorker
from namesync.workers.expiry import BatchExpiryWorker, ExpireOrderWorker
from namesync.workers.metadata import DailyMetadataFanout, MetadataSyncWorker
from namesync.workers.notifications import NotificationWorker
from namesync.workers.ownership import OwnershipWorker
from namesync.workers.reconcile import ReconcileWorker

if TYPE_CHECKING:
    from namesync.service import Runtime


@dataclass
class QueueDef:
    name: str
    handler: Handler
    pool_size: int = 1
    concurrency: int = 1


def queue_definitions(rt: "Runtime") -> List[QueueDef]:
    defs = [
        QueueDef(names.UPDATE_OWNERSHIP, OwnershipWorker(rt.store, rt.queue, rt.clock), 3, 1),
        QueueDef(names.SEND_NOTIFICATION, NotificationWorker(rt.store, rt.sender, rt.settings), 5, 2),
        QueueDef(names.EXPIRE_ORDERS, ExpireOrderWorker(rt.store, rt.clock), 2, 1),
        QueueDef(names.BATCH_EXPIRE_ORDERS, BatchExpiryWorker(rt.store, rt.clock)),
        QueueDef(names.SYNC_ENTITY_METADATA, MetadataSyncWorker(rt.store, rt.metadata), 2, 2),
        QueueDef(names.SCHEDULE_DAILY_METADATA_SYNC, DailyMetadataFanout(rt.store, rt.queue)),
        QueueDef(names.REFRESH_ANALYTICS, AnalyticsWorker(rt.store.engine, rt.settings.ANALYTICS_VIEWS)),
        QueueDef(names.RECONCILE_INDEX, ReconcileWorker(rt.sync)),
    ]
    overrides = rt.settings.WORKER_POOLS
    for d in defs:
        if d.name in overrides:
            d.pool_size, d.concurrency = overrides[d.name]
    return defs


def default_schedules(settings: Settings) -> List[Tuple[str, str, Dict]]:
    return [
        (names.BATCH_EXPIRE_ORDERS, settings.EXPIRE_CRON, {}),
        (names.SCHEDULE_DAILY_METADATA_SYNC, settings.METADATA_SYNC_CRON, {}),
        (names.REFRESH_ANALYTICS, settings.ANALYTICS_CRON, {}),
        (names.RECONCILE_INDEX, settings.RECONCILE_CRON, {"mode": "full"}),
    ]


def install_schedules(queue: JobQueue, settings: Settings) -> Dict[str, str]:
    out = {}
    for queue_name, cron, payload in default_schedules(settings):
        out[queue_name] = queue.schedule(queue_name, cron, payload).isoformat()
    return out
