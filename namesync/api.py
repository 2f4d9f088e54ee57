from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from namesync.config import settings
from namesync.monitor import get_health, get_metrics


def create_app(runtime=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = None
        if app.state.runtime is None:
            from namesync.service import Runtime
            owned = app.state.runtime = Runtime(settings)
        try:
            yield
        finally:
            # a runtime handed in by the caller is theirs to close
            if owned is not None:
                owned.close()

    app = FastAPI(title="namesync monitor", lifespan=lifespan)
    app.state.runtime = runtime

    @app.get("/health")
    def health():
        body = get_health(app.state.runtime)
        return JSONResponse(body, status_code=200 if body["ok"] else 503)

    @app.get("/metrics")
    def metrics(queue: Optional[str] = None):
        body = get_metrics(app.state.runtime)
        if queue:
            body["queues"] = {queue: body["queues"].get(queue, {})}
        return body

    return app
