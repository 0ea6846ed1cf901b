import socket

from dedup import DuplicateWindow
from forwarder import Forwarder
from harness.errors import BindError, WriteError
from harness.event import EndpointKind, MessageEvent
from harness.registry import Endpoint, Registry
from harness.settings import Settings
from harness.sink import EventSink
from harness.utils.addr import family_for, parse_addr, sockaddr_key
from harness.utils.clock import now_ms, ts


class UdpEndpoint(Endpoint):
    """
    Bound datagram socket shared by the receive worker and control-path sends.
    Server and client run the same loop; only the event topics differ.
    """

    def __init__(self, kind: EndpointKind, key: str, sink: EventSink, settings: Settings):
        super().__init__(key, sink, settings)
        self.kind = kind
        self.dedup = DuplicateWindow(settings.dup_window)
        self.sock = bind_udp(key)
        # recvfrom must not block forever or stop() would hang
        self.sock.settimeout(settings.recv_timeout)
        if settings.debug:
            print(f"{ts()} {kind} listening on {key}")

    def _run(self) -> None:
        sock, bufsize = self.sock, self.settings.max_datagram
        while not self._stop.is_set():
            try:
                data, addr = sock.recvfrom(bufsize)
            except (socket.timeout, BlockingIOError, InterruptedError):
                continue
            except OSError as e:
                # a bad datagram (or an ICMP error surfacing here) must not end observation
                self.emit_error(f"recv error: {e}")
                self._stop.wait(self.settings.recv_timeout)
                continue
            self._on_datagram(data, addr)

    def _on_datagram(self, data: bytes, addr) -> None:
        source = sockaddr_key(addr)
        seq = self.seq.next()
        dup = self.dedup.check(source, data)
        if self.settings.debug:
            print(f"{ts()} [{self.kind}:{self.key}] recv {len(data)} bytes from {source}")
        self.emit(MessageEvent(self.kind, self.key, source, data, seq, now_ms(), dup))

    def send_to(self, to_addr: str, data: bytes) -> int:
        try:
            dest = parse_addr(to_addr)
        except ValueError as e:
            raise WriteError(f"send error: {e}") from e
        try:
            return self.sock.sendto(data, dest)
        except OSError as e:
            raise WriteError(f"send error: {e}") from e

    def describe(self) -> dict:
        out = super().describe()
        out["seq"] = self.seq.value
        return out

    def close(self) -> None:
        self.sock.close()


def bind_udp(bind_addr: str) -> socket.socket:
    try:
        host, port = parse_addr(bind_addr)
    except ValueError as e:
        raise BindError(f"bind error: {e}") from e
    sock = socket.socket(family_for(host), socket.SOCK_DGRAM)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise BindError(f"bind error: {e}") from e
    return sock


def send_from(registry: Registry, forwarder: Forwarder,
              bind_addr: str, to_addr: str, data: bytes) -> int:
    """
    Send through the registered socket bound at bind_addr. When nothing is
    registered there, bind a transient socket to bind_addr for this one
    datagram instead of failing.
    """
    with registry.lookup_optional(bind_addr) as ep:
        if ep is not None:
            return ep.send_to(to_addr, data)
    return forwarder.send(data, to_addr, bind_addr)
