from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.responses import Response

from . import __version__, config
from .errors import envelope, install_error_handlers
from .observability.context import FIELDS, bound, new_request_id, snapshot
from .observability.logging import configure_logging
from .routes import (
    create_agents_router,
    create_auth_router,
    create_channels_router,
    create_inbox_router,
    create_realtime_router,
    create_webhooks_router,
)
from .runtime import InboxRuntime, build_runtime

log = logging.getLogger(__name__)


def create_app(runtime: Optional[InboxRuntime] = None) -> FastAPI:
    rt = runtime or build_runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await rt.start()
        except Exception:
            # Failing the lifespan makes the server exit non-zero instead of serving without a store.
            log.exception("Startup failed: session store unavailable")
            raise
        log.info("Inbox ready (db=%s)", "postgres" if rt.db.use_postgres else "sqlite")
        try:
            yield
        finally:
            await rt.stop()

    app = FastAPI(title="Inbox", version=__version__, lifespan=lifespan)
    app.state.runtime = rt
    install_error_handlers(app)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = new_request_id(request.headers.get("x-request-id"))
        with bound(request_id=rid):
            resp: Response = await call_next(request)
        resp.headers["X-Request-Id"] = rid
        return resp

    origins = [o.strip() for o in config.CORS_ORIGINS.split(",") if o.strip()]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(create_auth_router())
    app.include_router(create_channels_router())
    app.include_router(create_inbox_router())
    app.include_router(create_agents_router())
    app.include_router(create_webhooks_router())
    app.include_router(create_realtime_router())

    @app.get("/health")
    async def health():
        db_ok = await rt.db.ping()
        return envelope(
            {
                "status": "ok" if db_ok else "degraded",
                "db": db_ok,
                "ws_clients": len(rt.broadcaster.clients),
                "version": __version__,
            }
        )

    Instrumentator().instrument(app).expose(app, endpoint="/metrics")
    return app


def run() -> None:
    configure_logging(level=config.LOG_LEVEL, fields=FIELDS, context_getter=snapshot)
    uvicorn.run(create_app(), host="0.0.0.0", port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
