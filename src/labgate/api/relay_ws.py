"""
Relay WebSocket endpoint (`/ws/relay`).

One socket per peer. Inbound frames are dispatched to the Session Registry in the
threadpool (the registry takes blocking per-session locks). Outbound frames are put on
a per-connection asyncio queue from whichever thread produced them and drained by a
single sender task, so frames to one connection keep their order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from labgate.relay.registry import SessionRegistry

from .routes import get_session_registry

logger = logging.getLogger(__name__)

router = APIRouter()

_CLOSE = object()


async def _drain(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        frame = await outbox.get()
        if frame is _CLOSE:
            await websocket.close(code=1008)
            return
        await websocket.send_text(json.dumps(frame))


async def _receive(websocket: WebSocket, registry: SessionRegistry, connection_id: str) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            frame: Any = json.loads(raw)
        except ValueError:
            frame = None
        await run_in_threadpool(registry.dispatch, connection_id, frame)


@router.websocket("/ws/relay")
async def relay_websocket(websocket: WebSocket) -> None:
    registry = get_session_registry()
    await websocket.accept()

    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()

    def send(frame: dict[str, Any]) -> None:
        loop.call_soon_threadsafe(outbox.put_nowait, frame)

    def close() -> None:
        loop.call_soon_threadsafe(outbox.put_nowait, _CLOSE)

    connection_id = registry.open_connection(send, close)
    sender = asyncio.create_task(_drain(websocket, outbox))
    receiver = asyncio.create_task(_receive(websocket, registry, connection_id))
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Relay socket %s ended with %r", connection_id, exc)
    finally:
        sender.cancel()
        receiver.cancel()
        await run_in_threadpool(registry.disconnect, connection_id)
        logger.debug("Relay socket closed: %s", connection_id)
