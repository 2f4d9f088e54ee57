"""
Applies one change event: refresh the affected search documents, then queue
watcher notifications for listing and offer transitions.

The payload is only trusted for identity (and for before/after comparisons);
documents are always rebuilt from the authoritative rows.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from namesync.db import Store
from namesync.errors import ConnectionLost, PermanentError
from namesync.jobs import names
from namesync.jobs.queue import JobQueue
from namesync.models import EnsName, Listing, Offer, User, WatchlistEntry
from namesync.schemas import ChangeEvent, ChangeOperation, NotificationJob, NotificationType
from namesync.search.synchronizer import IndexSynchronizer

log = logging.getLogger(__name__)

_WATCH_FLAG = {
    NotificationType.NEW_LISTING: WatchlistEntry.notify_on_listing,
    NotificationType.PRICE_CHANGE: WatchlistEntry.notify_on_price_change,
    NotificationType.SALE: WatchlistEntry.notify_on_sale,
    NotificationType.NEW_OFFER: WatchlistEntry.notify_on_offer,
}


class ChangeProcessor:
    def __init__(self, store: Store, sync: IndexSynchronizer, queue: JobQueue):
        self.store = store
        self.sync = sync
        self.queue = queue

    def process(self, event: ChangeEvent) -> Dict[str, Any]:
        try:
            return self._process(event)
        except OperationalError as e:
            raise ConnectionLost(f"store unavailable: {e.orig}") from e

    def _process(self, event: ChangeEvent) -> Dict[str, Any]:
        if event.table == "ens_names":
            entity_id = event.row_id
            if entity_id is None:
                raise PermanentError("ens_names event without id")
            if event.operation == ChangeOperation.DELETE:
                self.sync.remove(entity_id)
                return {"removed": [entity_id]}
            self.sync.upsert(entity_id)
            return {"upserted": [entity_id]}

        if event.table not in ("listings", "offers"):
            raise PermanentError(f"unexpected table {event.table!r}")

        entity_ids = self._owning_entities(event)
        if not entity_ids:
            log.warning("%s %s: no owning name found, skipping", event.table, event.row_id,
                        extra={"table": event.table, "operation": event.operation.value})
            return {"upserted": []}
        for entity_id in sorted(entity_ids):
            self.sync.upsert(entity_id)

        jobs = self._notifications(event, min(entity_ids) if len(entity_ids) == 1 else None)
        queued = 0
        if jobs:
            queued = sum(1 for j in self.queue.enqueue_many(jobs) if j)
        return {"upserted": sorted(entity_ids), "notifications": queued}

    def _owning_entities(self, event: ChangeEvent) -> Set[int]:
        ids: Set[int] = set()
        for row in (event.data, event.old_data):
            if row and row.get("ens_name_id") is not None:
                ids.add(int(row["ens_name_id"]))
        if not ids and event.row_id is not None:
            model = Listing if event.table == "listings" else Offer
            with self.store.session() as db:
                owner = db.scalar(select(model.ens_name_id).where(model.id == event.row_id))
            if owner is not None:
                ids.add(int(owner))
        return ids

    # -- watcher notifications --------------------------------------------

    def _current_row(self, event: ChangeEvent) -> Optional[Dict[str, Any]]:
        if not event.truncated:
            return event.data
        if event.row_id is None or event.operation == ChangeOperation.DELETE:
            return None
        model = Listing if event.table == "listings" else Offer
        with self.store.session() as db:
            row = db.get(model, event.row_id)
            if row is None:
                return None
            return {c.key: getattr(row, c.key) for c in model.__mapper__.column_attrs}

    def _transitions(self, event: ChangeEvent, row: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Notable transitions in this event. Entries without a recipient go to watchers;
        recipient "owner" means the name's current owner."""
        old = event.old_data or {}
        op = event.operation
        out: List[Dict[str, Any]] = []
        if event.table == "listings":
            listing_id = row.get("id")
            if op == ChangeOperation.INSERT and row.get("status") == "active":
                out.append({"type": NotificationType.NEW_LISTING,
                            "metadata": {"listing_id": listing_id, "price_wei": row.get("price_wei"),
                                         "seller_address": row.get("seller_address")}})
            elif op == ChangeOperation.UPDATE and not event.truncated and old.get("status") == "active":
                if row.get("status") == "active" and old.get("price_wei") != row.get("price_wei"):
                    # keyed by the new price as well; each distinct change notifies once
                    out.append({"type": NotificationType.PRICE_CHANGE,
                                "key": f"{listing_id}:{row.get('price_wei')}",
                                "metadata": {"listing_id": listing_id, "old_price_wei": old.get("price_wei"),
                                             "new_price_wei": row.get("price_wei")}})
                elif row.get("status") == "sold":
                    meta = {"listing_id": listing_id, "price_wei": row.get("price_wei")}
                    out.append({"type": NotificationType.SALE, "metadata": meta})
                    out.append({"type": NotificationType.LISTING_SOLD, "metadata": meta,
                                "recipient": row.get("seller_address")})
        elif event.table == "offers":
            if op == ChangeOperation.INSERT and row.get("status") == "pending":
                meta = {"offer_id": row.get("id"), "offer_amount_wei": row.get("offer_amount_wei"),
                        "buyer_address": row.get("buyer_address")}
                out.append({"type": NotificationType.NEW_OFFER, "metadata": meta})
                out.append({"type": NotificationType.OFFER_RECEIVED, "metadata": meta, "recipient": "owner"})
        return out

    def _notifications(self, event: ChangeEvent, entity_id: Optional[int]) -> List[Dict[str, Any]]:
        if entity_id is None or event.operation == ChangeOperation.DELETE:
            return []
        row = self._current_row(event)
        if not row:
            return []
        transitions = self._transitions(event, row)
        if not transitions:
            return []

        jobs: List[Dict[str, Any]] = []
        row_id = row.get("id")
        with self.store.session() as db:
            for t in transitions:
                ntype = t["type"]
                key = t.get("key", row_id)
                if "recipient" in t:
                    recipient = t["recipient"]
                    if recipient == "owner":
                        recipient = db.scalar(select(EnsName.owner_address).where(EnsName.id == entity_id))
                    if not recipient:
                        continue
                    n = NotificationJob(type=ntype, recipient=recipient, entity_id=entity_id, metadata=t["metadata"])
                    jobs.append(self._job(n, f"{ntype.value}:{key}:{n.recipient}"))
                    continue
                watchers = db.scalars(
                    select(WatchlistEntry.user_id)
                    .join(User, User.id == WatchlistEntry.user_id)
                    .where(WatchlistEntry.ens_name_id == entity_id, _WATCH_FLAG[ntype].is_(True))
                    .order_by(WatchlistEntry.user_id)
                ).all()
                for user_id in watchers:
                    n = NotificationJob(type=ntype, user_id=user_id, entity_id=entity_id, metadata=t["metadata"])
                    jobs.append(self._job(n, f"{ntype.value}:{key}:{user_id}"))
        return jobs

    @staticmethod
    def _job(n: NotificationJob, key: str) -> Dict[str, Any]:
        return {"queue": names.SEND_NOTIFICATION, "payload": n.model_dump(mode="json"),
                "options": {"singleton_key": key}}
