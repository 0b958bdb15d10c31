"""
Peer-side relay transport (WebSocket client).

`RelayClient` connects to the relay with bounded retry, delivers every inbound JSON
frame to `on_frame` from a reader thread, and keeps the connection alive with periodic
`heartbeat` frames. Both peers use it; the state machines stay transport-agnostic.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable

from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.sync.client import ClientConnection, connect

from labgate.core.retry import RetryPolicy
from labgate.relay import messages as m

logger = logging.getLogger(__name__)

CONNECT_RETRY_ON: tuple[type[BaseException], ...] = (OSError, InvalidHandshake, TimeoutError)


class RelayClient:
    def __init__(
        self,
        url: str,
        *,
        on_frame: Callable[[dict[str, Any]], None],
        on_closed: Callable[[], None] | None = None,
        retry: RetryPolicy | None = None,
        heartbeat_interval_seconds: float = 30.0,
        open_timeout_seconds: float = 10.0,
        connector: Callable[..., ClientConnection] = connect,
    ):
        self._url = url
        self._on_frame = on_frame
        self._on_closed = on_closed
        self._retry = retry or RetryPolicy(retry_on=CONNECT_RETRY_ON)
        self._heartbeat_interval = float(heartbeat_interval_seconds)
        self._open_timeout = float(open_timeout_seconds)
        self._connector = connector
        self._ws: ClientConnection | None = None
        self._send_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._stop.is_set()

    def connect(self, cancel: threading.Event | None = None) -> None:
        """Open the socket (retrying transient failures) and start reader/heartbeat threads.

        Raises:
            RetryCancelled: If `cancel` is set while waiting to retry.
            InvalidURI: If the relay URL is not a WebSocket URL (never retried).
        """
        if self._ws is not None:
            return

        def _open() -> ClientConnection:
            return self._connector(self._url, open_timeout=self._open_timeout)

        try:
            self._ws = self._retry.run(_open, cancel=cancel, label=f"connect {self._url}")
        except InvalidURI:
            logger.error("Relay URL is not a WebSocket URL: %s", self._url)
            raise
        self._stop.clear()
        logger.info("Connected to relay %s", self._url)

        reader = threading.Thread(target=self._read_loop, name="relay-reader", daemon=True)
        heartbeat = threading.Thread(target=self._heartbeat_loop, name="relay-heartbeat", daemon=True)
        self._threads = [reader, heartbeat]
        for t in self._threads:
            t.start()

    def send(self, frame: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise ConnectionError("Relay client is not connected.")
        with self._send_lock:
            ws.send(json.dumps(frame))

    def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            for raw in ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("Dropping non-JSON frame from relay")
                    continue
                if isinstance(frame, dict):
                    self._on_frame(frame)
        except ConnectionClosed as exc:
            logger.info("Relay connection closed: %s", exc)
        finally:
            was_running = not self._stop.is_set()
            self._stop.set()
            self._ws = None
            if was_running and self._on_closed is not None:
                self._on_closed()

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self._heartbeat_interval):
            try:
                self.send(m.envelope(m.HEARTBEAT, {"timestamp": time.time()}))
            except (ConnectionError, ConnectionClosed):
                logger.debug("Heartbeat skipped; relay connection is gone")
                return

    def close(self) -> None:
        """Stop heartbeats and close the socket. `on_closed` is not called for a local close."""
        self._stop.set()
        ws = self._ws
        self._ws = None
        if ws is not None:
            ws.close()
        current = threading.current_thread()
        for t in self._threads:
            if t is not current:
                t.join(timeout=2.0)
        self._threads = []
