from __future__ import annotations
import logging
from typing import Any, Callable, Dict, List

from sqlalchemy import update

from namesync.db import Store, utcnow
from namesync.jobs import names
from namesync.jobs.queue import JobQueue
from namesync.models import EnsName, Listing
from namesync.schemas import JobRecord, NotificationJob, NotificationType, OwnershipUpdate

log = logging.getLogger(__name__)


class OwnershipWorker:
    """Applies an on-chain transfer: new owner, every active listing cancelled, sellers notified.

    The owner change and the cancellations commit together. Notification jobs are
    only enqueued after that commit, so a rolled back cascade never notifies.
    """

    def __init__(self, store: Store, queue: JobQueue, clock: Callable = utcnow):
        self.store = store
        self.queue = queue
        self.clock = clock

    def __call__(self, job: JobRecord) -> Dict[str, Any]:
        req = OwnershipUpdate.model_validate(job.payload)
        extra = {"entity_id": req.entity_id, "job_id": job.id}
        pending: List[Dict[str, Any]] = []

        with self.store.transaction() as db:
            name = db.get(EnsName, req.entity_id, with_for_update=True)
            if name is None:
                log.warning("ownership update for unknown name %s", req.entity_id, extra=extra)
                return {"status": "missing"}
            old_owner = (name.owner_address or "").lower()
            if old_owner == req.new_owner:
                return {"status": "unchanged"}

            now = self.clock()
            name.owner_address = req.new_owner
            name.last_transfer_date = now
            cancelled = db.execute(
                update(Listing)
                .where(Listing.ens_name_id == req.entity_id, Listing.status == "active")
                .values(status="cancelled", updated_at=now)
                .returning(Listing.id, Listing.seller_address, Listing.price_wei)
                .execution_options(synchronize_session=False)
            ).all()

            for listing_id, seller, price_wei in cancelled:
                n = NotificationJob(
                    type=NotificationType.LISTING_CANCELLED_OWNERSHIP_CHANGE,
                    recipient=seller,
                    entity_id=req.entity_id,
                    tx_hash=req.tx_hash,
                    metadata={
                        "name": name.name,
                        "listing_id": listing_id,
                        "price_wei": price_wei,
                        "old_owner": old_owner,
                        "new_owner": req.new_owner,
                        "block_number": req.block_number,
                    },
                )
                pending.append({
                    "queue": names.SEND_NOTIFICATION,
                    "payload": n.model_dump(mode="json"),
                    "options": {"singleton_key": f"ownership-cancel:{listing_id}:{req.tx_hash or job.id}"},
                })

        log.info("name %s transferred %s -> %s, %d listings cancelled", req.entity_id, old_owner,
                 req.new_owner, len(pending), extra=extra)
        enqueued = 0
        if pending:
            try:
                enqueued = sum(1 for j in self.queue.enqueue_many(pending) if j)
            except Exception:
                # the transfer is committed; a retry would see the new owner and do nothing
                log.exception("could not enqueue %d cancellation notices for name %s", len(pending), req.entity_id, extra=extra)
        return {
            "status": "transferred",
            "cancelled_listings": [j["payload"]["metadata"]["listing_id"] for j in pending],
            "notifications_enqueued": enqueued,
        }
