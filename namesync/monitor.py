from __future__ import annotations
import logging
from typing import Any, Dict

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from namesync.errors import IndexUnavailable
from namesync.models import EnsName

log = logging.getLogger(__name__)


def get_health(rt) -> Dict[str, Any]:
    store_ok = index_ok = False
    try:
        store_ok = rt.store.ping()
    except SQLAlchemyError as e:
        log.warning("store health check failed: %s", e)
    try:
        rt.sync.count()
        index_ok = True
    except IndexUnavailable as e:
        log.warning("index health check failed: %s", e)
    return {"ok": store_ok and index_ok, "store": store_ok, "index": index_ok}


def get_metrics(rt) -> Dict[str, Any]:
    with rt.store.session() as db:
        store_count = int(db.scalar(select(func.count()).select_from(EnsName)) or 0)
    try:
        index_count = rt.sync.count()
    except IndexUnavailable:
        index_count = None
    return {
        "queues": rt.queue.state_counts(),
        "store_documents": store_count,
        "index_documents": index_count,
        "index_lag": (store_count - index_count) if index_count is not None else None,
    }
