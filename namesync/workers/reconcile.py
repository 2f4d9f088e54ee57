from __future__ import annotations
from typing import Any, Dict

from namesync.schemas import JobRecord, Reconcile
from namesync.search.synchronizer import IndexSynchronizer


class ReconcileWorker:
    def __init__(self, sync: IndexSynchronizer):
        self.sync = sync

    def __call__(self, job: JobRecord) -> Dict[str, Any]:
        req = Reconcile.model_validate(job.payload)
        if req.mode == "drift":
            report = self.sync.scan_drift(repair=True)
            return {"mode": "drift", "missing": len(report["missing"]), "drifted": len(report["drifted"]),
                    "repaired": report["repaired"]}
        if req.mode == "orphans":
            return {"mode": "orphans", "deleted": self.sync.delete_orphans()}
        return dict(self.sync.bulk_reconcile(), mode="full")
