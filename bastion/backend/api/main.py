"""
api/main.py

FastAPI application factory.

Routers:
  /api/events      submit HTTP / access / network descriptors → Verdict
  /api/verdicts    audit trail (SQLite)
  /api/quarantine  active entries, manual quarantine / release
  /api/rules       list / add / reload / dry-run test
  /api/intel       feed status, watchlist submission
  /api/config      live thresholds
  /api/stats       aggregate + live counters

WebSockets: /ws/alerts, /ws/verdicts
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.websockets import WebSocketDisconnect

from ..metrics import METRICS
from .routes import config as config_router
from .routes import events as events_router
from .routes import intel as intel_router
from .routes import quarantine as quarantine_router
from .routes import rules as rules_router
from .routes import stats as stats_router
from .routes import verdicts as verdicts_router
from .ws_manager import ws_manager

logger = logging.getLogger(__name__)

_repository = None
_processor = None


def set_repository(repo) -> None:
    global _repository
    _repository = repo


def get_repository():
    if _repository is None:
        raise RuntimeError("Repository not initialised — call set_repository() first")
    return _repository


def set_processor(processor) -> None:
    global _processor
    _processor = processor


def get_processor():
    if _processor is None:
        raise RuntimeError("Processor not initialised — call set_processor() first")
    return _processor


def get_pipeline_stats() -> dict:
    stats: dict = {"counters": METRICS.as_dict(), "ws": ws_manager.all_counts()}
    if _processor is not None:
        stats["processor"] = dict(_processor.stats)
        stats["quarantined"] = len(_processor.quarantine_store)
        if _processor.rule_store is not None:
            stats["rule_set_version"] = _processor.rule_store.version
        if _processor.ioc_cache is not None:
            stats["iocs"] = len(_processor.ioc_cache)
    return stats


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("FastAPI startup")
        yield
        logger.info("FastAPI shutdown")

    app = FastAPI(
        title="Bastion — Security Event Pipeline",
        version="1.0.0",
        description="Real-time security event correlation and response",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # REST routers
    app.include_router(events_router.router,     prefix="/api")
    app.include_router(verdicts_router.router,   prefix="/api")
    app.include_router(quarantine_router.router, prefix="/api")
    app.include_router(rules_router.router,      prefix="/api")
    app.include_router(intel_router.router,      prefix="/api")
    app.include_router(config_router.router,     prefix="/api")
    app.include_router(stats_router.router,      prefix="/api")

    # WebSockets
    @app.websocket("/ws/alerts")
    async def ws_alerts(websocket: WebSocket):
        await ws_manager.connect(websocket, "alerts")
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await ws_manager.disconnect(websocket, "alerts")

    @app.websocket("/ws/verdicts")
    async def ws_verdicts(websocket: WebSocket):
        await ws_manager.connect(websocket, "verdicts")
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await ws_manager.disconnect(websocket, "verdicts")

    @app.get("/health")
    async def health() -> dict:
        body: dict = {"status": "ok", "ws_connections": ws_manager.all_counts()}
        if _processor is not None and _processor.rule_store is not None:
            body["rule_set_version"] = _processor.rule_store.version
        return body

    return app
