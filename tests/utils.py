"""Helpers for socket tests: free loopback ports and waiting on sink events."""

import queue
import socket
import time
from typing import Callable

from harness.event import Event
from harness.sink import QueueSink


def free_port(kind: int = socket.SOCK_DGRAM) -> int:
    with socket.socket(socket.AF_INET, kind) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def next_event(sink: QueueSink, match: Callable[[Event], bool] = lambda ev: True,
               timeout: float = 3.0) -> Event:
    """Return the first event satisfying `match`, discarding the others."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError("timed out waiting for event")
        try:
            ev = sink.get(timeout=remaining)
        except queue.Empty:
            raise AssertionError("timed out waiting for event") from None
        if match(ev):
            return ev


def drain(sink: QueueSink, settle: float = 0.2) -> list:
    time.sleep(settle)
    out = []
    while True:
        try:
            out.append(sink.queue.get_nowait())
        except queue.Empty:
            return out


def retry_until(condition: Callable[[], bool], timeout: float = 3.0, interval: float = 0.02,
                message: str = "Condition not met within timeout") -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return
        time.sleep(interval)
    raise TimeoutError(message)


def recv_exactly(sock: socket.socket, n: int, timeout: float = 3.0) -> bytes:
    sock.settimeout(timeout)
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf
