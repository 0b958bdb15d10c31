import json
import queue
import threading

import pytest
from websockets.exceptions import InvalidURI

from labgate.core.retry import RetryPolicy
from labgate.peers.transport import CONNECT_RETRY_ON, RelayClient


class FakeConnection:
    """Stands in for `websockets.sync.client.ClientConnection`."""

    def __init__(self):
        self.inbox: queue.Queue = queue.Queue()
        self.sent = []
        self.closed = False

    def __iter__(self):
        while True:
            item = self.inbox.get()
            if item is None:
                return
            yield item

    def send(self, text):
        self.sent.append(json.loads(text))

    def close(self):
        self.closed = True
        self.inbox.put(None)


def _retry(attempts=3):
    return RetryPolicy(max_attempts=attempts, base_delay_seconds=0, max_delay_seconds=0, retry_on=CONNECT_RETRY_ON)


def test_connect_retries_then_delivers_frames_and_reports_close():
    conn = FakeConnection()
    attempts = {"n": 0}

    def connector(url, open_timeout):
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionRefusedError("relay not up yet")
        return conn

    frames = []
    closed = threading.Event()
    client = RelayClient(
        "ws://relay.test/ws/relay",
        on_frame=frames.append,
        on_closed=closed.set,
        retry=_retry(),
        heartbeat_interval_seconds=60,
        connector=connector,
    )
    client.connect()
    assert attempts["n"] == 3
    assert client.connected

    client.send({"type": "heartbeat", "data": {"timestamp": 1}})
    assert conn.sent == [{"type": "heartbeat", "data": {"timestamp": 1}}]

    conn.inbox.put('{"type": "registered", "data": {"state": "PENDING"}}')
    conn.inbox.put("not json")
    conn.inbox.put(None)
    assert closed.wait(2)
    assert frames == [{"type": "registered", "data": {"state": "PENDING"}}]
    assert not client.connected

    with pytest.raises(ConnectionError):
        client.send({"type": "heartbeat", "data": {}})
    client.close()


def test_invalid_url_is_not_retried():
    calls = {"n": 0}

    def connector(url, open_timeout):
        calls["n"] += 1
        raise InvalidURI(url, "not a websocket URI")

    client = RelayClient("http://relay.test", on_frame=lambda _f: None, retry=_retry(), connector=connector)
    with pytest.raises(InvalidURI):
        client.connect()
    assert calls["n"] == 1


def test_local_close_does_not_report_transport_loss():
    conn = FakeConnection()
    closed = threading.Event()
    client = RelayClient(
        "ws://relay.test/ws/relay",
        on_frame=lambda _f: None,
        on_closed=closed.set,
        retry=_retry(0),
        heartbeat_interval_seconds=60,
        connector=lambda url, open_timeout: conn,
    )
    client.connect()
    client.close()
    assert conn.closed
    assert not closed.is_set()


def test_heartbeats_are_sent_periodically():
    conn = FakeConnection()
    client = RelayClient(
        "ws://relay.test/ws/relay",
        on_frame=lambda _f: None,
        retry=_retry(0),
        heartbeat_interval_seconds=0.01,
        connector=lambda url, open_timeout: conn,
    )
    client.connect()
    try:
        for _ in range(200):
            if any(f["type"] == "heartbeat" for f in conn.sent):
                break
            threading.Event().wait(0.01)
    finally:
        client.close()
    assert any(f["type"] == "heartbeat" for f in conn.sent)
