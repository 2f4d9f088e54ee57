from __future__ import annotations
import logging
import re
from typing import Any, Dict, List

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from namesync.errors import PermanentError
from namesync.schemas import JobRecord, RefreshAnalytics

log = logging.getLogger(__name__)

_VIEW = re.compile(r"^[a-z_][a-z0-9_]*$")


def _needs_blocking_refresh(err: DBAPIError) -> bool:
    msg = str(err.orig if err.orig is not None else err).lower()
    return "concurrently" in msg or "unique index" in msg or "not been populated" in msg


def refresh_view(engine: Engine, view: str) -> str:
    """REFRESH ... CONCURRENTLY, or a blocking refresh when the view can't do that yet."""
    try:
        with engine.begin() as conn:
            conn.execute(text(f"REFRESH MATERIALIZED VIEW CONCURRENTLY {view}"))
        return "concurrent"
    except DBAPIError as e:
        if not _needs_blocking_refresh(e):
            raise
        log.warning("concurrent refresh of %s rejected (%s), refreshing with lock", view, e.orig)
    with engine.begin() as conn:
        conn.execute(text(f"REFRESH MATERIALIZED VIEW {view}"))
    return "blocking"


class AnalyticsWorker:
    def __init__(self, engine: Engine, views: List[str]):
        self.engine = engine
        self.views = list(views)

    def __call__(self, job: JobRecord) -> Dict[str, Any]:
        req = RefreshAnalytics.model_validate(job.payload)
        if req.view_name is not None:
            if req.view_name not in self.views or not _VIEW.match(req.view_name):
                raise PermanentError(f"unknown analytics view {req.view_name!r}")
            targets = [req.view_name]
        else:
            targets = self.views

        refreshed: Dict[str, str] = {}
        failed: Dict[str, str] = {}
        for view in targets:
            try:
                refreshed[view] = refresh_view(self.engine, view)
            except DBAPIError as e:
                log.error("refresh of %s failed: %s", view, e.orig)
                failed[view] = str(e.orig)
        if failed and not refreshed:
            raise RuntimeError(f"all analytics refreshes failed: {sorted(failed)}")
        return {"refreshed": refreshed, "failed": failed}
