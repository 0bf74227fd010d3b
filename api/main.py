from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text

from api.config import assert_prod_invariants
from api.config.env import log_level, ws_heartbeat_seconds
from api.db import get_engine, init_db
from api.events_ws import router as events_router
from api.invoices import router as invoices_router
from api.metrics import record_domain_error
from api.time_entries import router as time_entries_router
from services.connection_registry import ConnectionRegistry
from services.errors import (
    Conflict,
    InvalidTransition,
    LedgerError,
    Locked,
    NotFound,
    ValidationError,
)
from services.event_stream import EventBroadcaster

logger = logging.getLogger("timeledger")

_ERROR_STATUS = (
    (NotFound, 404),
    (Locked, 423),
    (Conflict, 409),
    (InvalidTransition, 409),
    (ValidationError, 422),
)


def status_for(exc: LedgerError) -> int:
    for cls, code in _ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return 400


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _heartbeat_loop(registry: ConnectionRegistry, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            registry.sweep_heartbeats()
        except Exception:
            logger.exception("heartbeat_sweep_failed")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    task = asyncio.ensure_future(
        _heartbeat_loop(app.state.registry, app.state.heartbeat_seconds)
    )
    logger.info("heartbeat_started interval=%s", app.state.heartbeat_seconds)
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.registry._reset()


def build_app(
    *,
    clock: Optional[Callable[[], datetime]] = None,
    registry: Optional[ConnectionRegistry] = None,
) -> FastAPI:
    logging.basicConfig(
        level=log_level(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    assert_prod_invariants()

    init_db()
    logger.info("Time ledger DB initialized")

    app = FastAPI(
        title="Time Ledger",
        version=os.getenv("TL_VERSION", "0.1.0"),
        description="Time entry ledger, invoice aggregation and live billing events.",
        openapi_tags=[
            {"name": "health", "description": "Service health endpoints"},
            {"name": "time-entries", "description": "Time entry ledger (staff)"},
            {"name": "invoices", "description": "Invoice aggregation and lifecycle"},
            {"name": "events", "description": "Real-time event stream"},
        ],
        lifespan=_lifespan,
    )

    app.state.registry = registry or ConnectionRegistry()
    app.state.broadcaster = EventBroadcaster(app.state.registry)
    app.state.clock = clock or _utc_now
    app.state.heartbeat_seconds = ws_heartbeat_seconds()

    Instrumentator().instrument(app).expose(app)

    @app.exception_handler(LedgerError)
    async def _ledger_error(request: Request, exc: LedgerError) -> JSONResponse:
        record_domain_error(exc.code)
        status_code = status_for(exc)
        logger.info(
            "domain_error code=%s status=%s path=%s", exc.code, status_code, request.url.path
        )
        return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})

    app.include_router(time_entries_router)
    app.include_router(invoices_router)
    app.include_router(events_router)

    @app.get("/health/live", tags=["health"])
    async def health_live() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/health/ready", tags=["health"])
    def health_ready() -> JSONResponse:
        try:
            with get_engine().connect() as conn:
                conn.execute(text("SELECT 1"))
                conn.commit()
        except Exception as exc:
            logger.warning("readiness_db_failed err=%s", exc)
            return JSONResponse(status_code=503, content={"status": "unavailable"})
        return JSONResponse(
            content={
                "status": "ready",
                "connections": app.state.registry.connection_count(),
            }
        )

    return app
