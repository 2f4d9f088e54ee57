from __future__ import annotations
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from elasticsearch import ApiError, ConnectionError as ESConnectionError, ConnectionTimeout, Elasticsearch
from sqlalchemy import select

from namesync.config import Settings
from namesync.db import Store
from namesync.errors import IndexUnavailable, PermanentError, SchemaMismatch
from namesync.models import EnsName
from namesync.search.documents import build_documents, iter_name_batches, load_document
from namesync.search.schema import index_body, index_mappings, mapping_differences, settings_differences

log = logging.getLogger(__name__)

# fields compared by drift scans
DRIFT_FIELDS = ("owner", "status", "listing_id", "price_wei", "highest_offer_wei", "active_offers_count", "last_sale_price_wei")

_TRANSIENT_STATUS = {408, 429, 502, 503, 504}


def make_client(settings: Settings) -> Elasticsearch:
    kwargs: Dict[str, Any] = {"request_timeout": settings.ELASTICSEARCH_TIMEOUT, "retry_on_timeout": True, "max_retries": 2}
    if settings.ELASTICSEARCH_API_KEY:
        kwargs["api_key"] = settings.ELASTICSEARCH_API_KEY
    return Elasticsearch(settings.ELASTICSEARCH_URL, **kwargs)


@contextmanager
def _es_errors(what: str) -> Iterator[None]:
    try:
        yield
    except (ESConnectionError, ConnectionTimeout) as e:
        raise IndexUnavailable(f"{what}: {e}") from e
    except ApiError as e:
        if e.status_code in _TRANSIENT_STATUS:
            raise IndexUnavailable(f"{what}: {e}") from e
        raise


class IndexSynchronizer:
    def __init__(self, es: Elasticsearch, store: Store, settings: Settings):
        self.es = es
        self.store = store
        self.s = settings
        self.index = settings.ELASTICSEARCH_INDEX

    # -- schema ---------------------------------------------------------

    def ensure_schema(self) -> str:
        with _es_errors("ensure_schema"):
            if not self.es.indices.exists(index=self.index):
                body = index_body(self.s.NGRAM_MIN, self.s.NGRAM_MAX)
                self.es.indices.create(index=self.index, settings=body["settings"], mappings=body["mappings"])
                log.info("created index %s", self.index)
                return "created"
            current = self.es.indices.get_mapping(index=self.index)
            current_settings = self.es.indices.get_settings(index=self.index)
        mappings = next(iter(dict(current).values()), {}).get("mappings", {})
        live_settings = next(iter(dict(current_settings).values()), {}).get("settings", {}).get("index", {})
        diffs = mapping_differences(mappings, index_mappings())
        diffs += settings_differences(live_settings, index_body(self.s.NGRAM_MIN, self.s.NGRAM_MAX)["settings"])
        if diffs:
            raise SchemaMismatch(self.index, diffs)
        return "ok"

    def recreate_schema(self) -> str:
        """Drops the index and builds it again. Destructive: needs a full resync afterwards."""
        with _es_errors("recreate_schema"):
            self.es.options(ignore_status=404).indices.delete(index=self.index)
            body = index_body(self.s.NGRAM_MIN, self.s.NGRAM_MAX)
            self.es.indices.create(index=self.index, settings=body["settings"], mappings=body["mappings"])
        log.warning("recreated index %s", self.index)
        return "recreated"

    # -- incremental ----------------------------------------------------

    def upsert(self, entity_id: int) -> Optional[Dict[str, Any]]:
        with self.store.session() as db:
            doc = load_document(db, entity_id)
        if doc is None:
            self.remove(entity_id)
            return None
        with _es_errors(f"upsert {entity_id}"):
            self.es.index(index=self.index, id=str(entity_id), document=doc)
        log.debug("indexed entity %s", entity_id, extra={"entity_id": entity_id})
        return doc

    def remove(self, entity_id: int) -> None:
        with _es_errors(f"remove {entity_id}"):
            self.es.options(ignore_status=404).delete(index=self.index, id=str(entity_id))

    def get(self, entity_id: int) -> Optional[Dict[str, Any]]:
        with _es_errors(f"get {entity_id}"):
            resp = self.es.options(ignore_status=404).get(index=self.index, id=str(entity_id))
        return resp.get("_source") if resp.get("found") else None

    def count(self) -> int:
        with _es_errors("count"):
            return int(self.es.count(index=self.index)["count"])

    # -- bulk -----------------------------------------------------------

    def _bulk(self, operations: List[Dict[str, Any]]) -> Dict[str, int]:
        if not operations:
            return {"ok": 0, "failed": 0}
        with _es_errors("bulk"):
            resp = self.es.bulk(operations=operations)
        ok = failed = 0
        for item in resp.get("items", []):
            (action, result), = item.items()
            status = result.get("status", 500)
            if status < 300 or (action == "delete" and status == 404):
                ok += 1
            else:
                failed += 1
                log.warning("bulk %s failed for %s: %s", action, result.get("_id"), result.get("error"))
        return {"ok": ok, "failed": failed}

    def _index_ops(self, docs: Dict[int, Dict[str, Any]]) -> List[Dict[str, Any]]:
        ops: List[Dict[str, Any]] = []
        for entity_id, doc in docs.items():
            ops.append({"index": {"_index": self.index, "_id": str(entity_id)}})
            ops.append(doc)
        return ops

    def _build_batch(self, db, names) -> Dict[int, Dict[str, Any]]:
        try:
            return build_documents(db, names)
        except PermanentError:
            # one bad row must not sink the whole batch; build one at a time
            docs = {}
            for n in names:
                try:
                    docs[n.id] = load_document(db, n.id)
                except PermanentError as e:
                    log.error("skipping entity %s: %s", n.id, e, extra={"entity_id": n.id})
            return {k: v for k, v in docs.items() if v is not None}

    def iter_index_ids(self, page_size: int = 1000) -> Iterator[int]:
        search_after = None
        while True:
            kwargs: Dict[str, Any] = {"index": self.index, "size": page_size, "sort": [{"entity_id": "asc"}], "source": False}
            if search_after is not None:
                kwargs["search_after"] = search_after
            with _es_errors("scan"):
                resp = self.es.search(**kwargs)
            hits = resp["hits"]["hits"]
            if not hits:
                return
            for h in hits:
                yield int(h["_id"])
            search_after = hits[-1]["sort"]

    def _missing_from_store(self, ids: List[int]) -> List[int]:
        if not ids:
            return []
        with self.store.session() as db:
            present = set(db.scalars(select(EnsName.id).where(EnsName.id.in_(ids))))
        return [i for i in ids if i not in present]

    def scan_orphans(self) -> List[int]:
        orphans: List[int] = []
        chunk: List[int] = []
        for entity_id in self.iter_index_ids():
            chunk.append(entity_id)
            if len(chunk) >= self.s.BULK_BATCH_SIZE:
                orphans.extend(self._missing_from_store(chunk))
                chunk = []
        orphans.extend(self._missing_from_store(chunk))
        return orphans

    def delete_orphans(self, candidates: Optional[List[int]] = None) -> int:
        candidates = self.scan_orphans() if candidates is None else candidates
        # re-check right before deleting: a row may have been inserted meanwhile
        confirmed = self._missing_from_store(candidates)
        ops = [{"delete": {"_index": self.index, "_id": str(i)}} for i in confirmed]
        deleted = 0
        for start in range(0, len(ops), self.s.BULK_BATCH_SIZE):
            deleted += self._bulk(ops[start:start + self.s.BULK_BATCH_SIZE])["ok"]
        if deleted:
            log.info("deleted %d orphan documents", deleted)
        return deleted

    def bulk_reconcile(self) -> Dict[str, Any]:
        """Re-project every stored name and drop documents whose row is gone or can't be projected."""
        t0 = time.time()
        indexed = failed = invalid = 0
        with self.store.session() as db:
            for names in iter_name_batches(db, self.s.BULK_BATCH_SIZE):
                docs = self._build_batch(db, names)
                res = self._bulk(self._index_ops(docs))
                indexed += res["ok"]
                failed += res["failed"] + (len(names) - len(docs))
                # an unparseable row must not keep serving its last good document
                skipped = [n.id for n in names if n.id not in docs]
                if skipped:
                    invalid += self._bulk([{"delete": {"_index": self.index, "_id": str(i)}} for i in skipped])["ok"]
                log.info("reconcile progress: %d indexed", indexed)
        orphans = self.delete_orphans()
        report = {
            "indexed": indexed,
            "failed": failed,
            "invalid_dropped": invalid,
            "orphans_deleted": orphans,
            "duration_seconds": round(time.time() - t0, 3),
        }
        log.info("bulk reconcile finished: %s", report)
        return report

    def scan_drift(self, repair: bool = False) -> Dict[str, Any]:
        missing: List[int] = []
        drifted: List[Dict[str, Any]] = []
        repaired = 0
        with self.store.session() as db:
            for names in iter_name_batches(db, self.s.BULK_BATCH_SIZE):
                expected = self._build_batch(db, names)
                if not expected:
                    continue
                with _es_errors("drift scan"):
                    resp = self.es.mget(index=self.index, ids=[str(i) for i in expected])
                stale: Dict[int, Dict[str, Any]] = {}
                for d in resp.get("docs", []):
                    entity_id = int(d["_id"])
                    want = expected[entity_id]
                    if not d.get("found"):
                        missing.append(entity_id)
                        stale[entity_id] = want
                        continue
                    have = d.get("_source") or {}
                    fields = [f for f in DRIFT_FIELDS if have.get(f) != want.get(f)]
                    if fields:
                        drifted.append({"entity_id": entity_id, "fields": fields})
                        stale[entity_id] = want
                if repair and stale:
                    repaired += self._bulk(self._index_ops(stale))["ok"]
        report = {"missing": missing, "drifted": drifted, "repaired": repaired}
        if missing or drifted:
            log.warning("index drift: %d missing, %d drifted, %d repaired", len(missing), len(drifted), repaired)
        return report
