from __future__ import annotations
import logging
from typing import Any, Dict

from sqlalchemy import select

from namesync.db import Store
from namesync.jobs import names
from namesync.jobs.queue import JobQueue
from namesync.metadata_client import MetadataClient
from namesync.models import EnsName, Listing
from namesync.schemas import JobRecord, SyncMetadata

log = logging.getLogger(__name__)

KEPT_KEYS = ("name", "description", "image", "url", "attributes", "background_image")


class MetadataSyncWorker:
    def __init__(self, store: Store, client: MetadataClient):
        self.store = store
        self.client = client

    def __call__(self, job: JobRecord) -> Dict[str, Any]:
        req = SyncMetadata.model_validate(job.payload)
        with self.store.session() as db:
            name = db.get(EnsName, req.entity_id)
            if name is None:
                return {"status": "missing"}
            token_id = name.token_id

        data = self.client.fetch(token_id)
        meta = {k: data[k] for k in KEPT_KEYS if k in data}

        with self.store.transaction() as db:
            name = db.get(EnsName, req.entity_id)
            if name is None:
                return {"status": "missing"}
            resolver = (data.get("resolver") or "").lower() or name.resolver_address
            if name.ens_metadata == meta and resolver == name.resolver_address:
                return {"status": "unchanged"}
            name.ens_metadata = meta
            name.resolver_address = resolver
        log.info("metadata refreshed for %s", req.entity_id, extra={"entity_id": req.entity_id})
        return {"status": "updated"}


class DailyMetadataFanout:
    """Queues one metadata sync per name that currently has an active listing."""

    def __init__(self, store: Store, queue: JobQueue):
        self.store = store
        self.queue = queue

    def __call__(self, job: JobRecord) -> Dict[str, Any]:
        with self.store.session() as db:
            ids = db.scalars(
                select(Listing.ens_name_id).where(Listing.status == "active").distinct().order_by(Listing.ens_name_id)
            ).all()
        jobs = [
            {"queue": names.SYNC_ENTITY_METADATA, "payload": {"entity_id": i},
             "options": {"singleton_key": f"metadata:{i}"}}
            for i in ids
        ]
        queued = sum(1 for j in self.queue.enqueue_many(jobs) if j) if jobs else 0
        log.info("queued %d metadata syncs (%d names listed)", queued, len(ids))
        return {"names": len(ids), "queued": queued}
