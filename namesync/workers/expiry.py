from __future__ import annotations
import logging
from typing import Any, Callable, Dict

from sqlalchemy import select, update

from namesync.db import Store, utcnow
from namesync.models import Listing, Offer
from namesync.schemas import ExpireOrder, JobRecord

log = logging.getLogger(__name__)

BATCH_SIZE = 50

_OPEN = {"listing": (Listing, "active"), "offer": (Offer, "pending")}


def expire_order(store: Store, order_type: str, order_id: int, now) -> bool:
    model, open_status = _OPEN[order_type]
    values: Dict[str, Any] = {"status": "expired"}
    if model is Listing:
        values["updated_at"] = now
    with store.transaction() as db:
        res = db.execute(
            update(model)
            .where(model.id == order_id, model.status == open_status, model.expires_at <= now)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    return res.rowcount == 1


def expire_due(store: Store, order_type: str, now, batch_size: int = BATCH_SIZE) -> int:
    """Expire every overdue order in small transactions to keep each trigger burst small."""
    model, open_status = _OPEN[order_type]
    total = 0
    while True:
        with store.transaction() as db:
            ids = db.scalars(
                select(model.id)
                .where(model.status == open_status, model.expires_at.is_not(None), model.expires_at <= now)
                .order_by(model.id)
                .limit(batch_size)
            ).all()
            if not ids:
                return total
            values: Dict[str, Any] = {"status": "expired"}
            if model is Listing:
                values["updated_at"] = now
            res = db.execute(
                update(model)
                .where(model.id.in_(ids), model.status == open_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            total += res.rowcount
        if len(ids) < batch_size:
            return total


class ExpireOrderWorker:
    def __init__(self, store: Store, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    def __call__(self, job: JobRecord) -> Dict[str, Any]:
        req = ExpireOrder.model_validate(job.payload)
        expired = expire_order(self.store, req.order_type, req.order_id, self.clock())
        if not expired:
            log.info("%s %s not expired: already closed or not yet due", req.order_type, req.order_id,
                     extra={"job_id": job.id})
        return {"expired": expired}


class BatchExpiryWorker:
    def __init__(self, store: Store, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    def __call__(self, job: JobRecord) -> Dict[str, Any]:
        now = self.clock()
        listings = expire_due(self.store, "listing", now)
        offers = expire_due(self.store, "offer", now)
        if listings or offers:
            log.info("expired %d listings and %d offers", listings, offers)
        return {"listings": listings, "offers": offers}
