import base64
import os
import socket
import threading
import time

import pytest

from harness.errors import AlreadyRunning, ConnectError, NotRunning
from harness.event import ErrorEvent, MessageEvent, PeerEvent
from harness.settings import Settings
from sockharness import Harness
from tests.utils import free_port, next_event, recv_exactly, retry_until


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


@pytest.fixture
def listener():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    s.listen(8)
    s.settimeout(3)
    yield s
    s.close()


def remote_of(listener) -> str:
    return f"127.0.0.1:{listener.getsockname()[1]}"


def test_connect_send_and_receive(harness, sink, listener):
    remote = remote_of(listener)
    assert harness.start_tcp_client(remote) == f"TCP client connected to {remote}"
    conn, _ = listener.accept()
    with conn:
        assert harness.tcp_client_send(remote, b64(b"hello")) == f"sent 5 bytes to {remote}"
        assert recv_exactly(conn, 5) == b"hello"

        conn.sendall(b"back")
        ev = next_event(sink, lambda e: isinstance(e, MessageEvent))
        assert ev.topic == "tcp:client:message"
        assert ev.endpoint == remote
        assert ev.peer is None
        assert ev.data == b"back"
        assert ev.seq == 1


def test_remote_close_ends_the_worker_but_keeps_the_entry(harness, sink, listener):
    remote = remote_of(listener)
    harness.start_tcp_client(remote)
    conn, _ = listener.accept()
    conn.close()

    ev = next_event(sink, lambda e: isinstance(e, ErrorEvent))
    assert ev.error == "connection closed"
    assert ev.topic == "tcp:client:error"
    retry_until(lambda: harness.status()["tcp:client"][remote]["alive"] is False)

    with pytest.raises(AlreadyRunning):
        harness.start_tcp_client(remote)
    assert harness.stop_tcp_client(remote) == f"TCP client disconnected from {remote}"
    with pytest.raises(NotRunning):
        harness.stop_tcp_client(remote)


def test_connect_refused_is_returned_and_not_registered(harness):
    remote = f"127.0.0.1:{free_port(socket.SOCK_STREAM)}"
    with pytest.raises(ConnectError, match="connect error"):
        harness.start_tcp_client(remote)
    assert remote not in harness.tcp_clients


def test_send_after_stop_is_not_running(harness, listener):
    remote = remote_of(listener)
    harness.start_tcp_client(remote)
    harness.stop_tcp_client()
    with pytest.raises(NotRunning):
        harness.tcp_client_send(remote, b64(b"x"))


def test_random_payload_round_trip_between_client_and_server(harness, sink):
    bind = f"127.0.0.1:{free_port(socket.SOCK_STREAM)}"
    payload = os.urandom(1000)
    harness.start_tcp_server(bind)
    harness.start_tcp_client(bind)
    peer = next_event(sink, lambda e: isinstance(e, PeerEvent) and e.connected).peer

    harness.tcp_client_send(bind, b64(payload))
    received = b""
    while len(received) < len(payload):
        received += next_event(sink, lambda e: isinstance(e, MessageEvent) and e.kind == "tcp:server").data
    assert received == payload

    harness.tcp_server_send(bind, peer, b64(received))
    echoed = b""
    while len(echoed) < len(payload):
        echoed += next_event(sink, lambda e: isinstance(e, MessageEvent) and e.kind == "tcp:client").data
    assert echoed == payload


def test_hanging_connect_does_not_stall_other_clients(sink, listener, monkeypatch):
    settings = Settings(recv_timeout=0.05, tcp_poll_interval=0.005, lock_timeout=0.5, debug=False)
    slow_port = free_port(socket.SOCK_STREAM)
    slow = f"127.0.0.1:{slow_port}"
    entered, release = threading.Event(), threading.Event()
    real_connect = socket.create_connection

    def create_connection(address, *args, **kwargs):
        if address[1] == slow_port:
            # a remote whose accept queue is full: the SYN is never answered
            entered.set()
            release.wait(5)
            raise OSError("timed out")
        return real_connect(address, *args, **kwargs)

    monkeypatch.setattr(socket, "create_connection", create_connection)
    with Harness(sink, settings) as h:
        healthy = remote_of(listener)
        h.start_tcp_client(healthy)
        conn, _ = listener.accept()
        errors = []
        t = threading.Thread(target=lambda: errors.append(pytest.raises(ConnectError, h.start_tcp_client, slow)))
        t.start()
        try:
            assert entered.wait(2)
            began = time.monotonic()
            assert h.tcp_client_send(healthy, b64(b"ping")) == f"sent 4 bytes to {healthy}"
            assert list(h.status()["tcp:client"]) == [healthy]
            assert time.monotonic() - began < settings.lock_timeout
            assert recv_exactly(conn, 4) == b"ping"
        finally:
            release.set()
            t.join(5)
            conn.close()
        assert len(errors) == 1
        assert slow not in h.tcp_clients
