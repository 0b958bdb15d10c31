"""
FastAPI application wiring.

This file creates the `FastAPI` instance, installs CORS, and starts the relay sweeper
(heartbeat enforcement, idle-session expiry). Protocol logic lives in
`labgate.relay.registry`; HTTP endpoints in `labgate.api.routes`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool
from starlette.middleware.cors import CORSMiddleware

from labgate.config.settings import get_settings
from labgate.core.logging import configure_logging
from labgate.relay.registry import SessionRegistry

from .relay_ws import router as relay_ws_router
from .routes import get_session_registry, router

configure_logging()

logger = logging.getLogger(__name__)


async def _sweep_forever(registry: SessionRegistry, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await run_in_threadpool(registry.sweep)
        except Exception:
            logger.exception("Relay sweep failed")
            continue
        if any(result.values()):
            logger.info("Relay sweep: %s", result)


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    sweeper = asyncio.create_task(_sweep_forever(get_session_registry(), settings.relay.sweep_interval_seconds))
    try:
        yield
    finally:
        sweeper.cancel()


settings = get_settings()
app = FastAPI(title="LabGate Relay", version="0.1.0", lifespan=lifespan)

# CORS (dev-friendly): the desktop page may be served from another local port.
cors_origins = [s.strip() for s in settings.cors.origins if s.strip()]
cors_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$" if settings.cors.allow_local else ""
if cors_origins or cors_origin_regex:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_origin_regex=cors_origin_regex or None,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(router)
app.include_router(relay_ws_router)
