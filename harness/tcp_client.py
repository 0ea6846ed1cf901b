import socket

from harness.errors import ConnectError, WriteError
from harness.event import MessageEvent
from harness.registry import Endpoint
from harness.settings import Settings
from harness.sink import EventSink
from harness.utils.addr import parse_addr
from harness.utils.clock import now_ms, ts


class TcpClientEndpoint(Endpoint):
    """
    One outbound connection. The worker reads from a dup() of the stream so
    its short read timeout doesn't apply to control-path writes.
    A remote close ends the worker; the entry stays registered until stopped.
    """
    kind = "tcp:client"

    def __init__(self, key: str, sink: EventSink, settings: Settings):
        super().__init__(key, sink, settings)
        try:
            host, port = parse_addr(key)
        except ValueError as e:
            raise ConnectError(f"connect error: {e}") from e
        try:
            stream = socket.create_connection((host, port), timeout=settings.connect_timeout)
        except OSError as e:
            raise ConnectError(f"connect error: {e}") from e
        try:
            stream.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            stream.settimeout(settings.write_timeout)
            self.read_stream = stream.dup()
        except OSError as e:
            stream.close()
            raise ConnectError(f"connect error: {e}") from e
        self.read_stream.settimeout(settings.recv_timeout)
        self.stream = stream
        if settings.debug:
            print(f"{ts()} tcp:client connected to {key}")

    def _run(self) -> None:
        bufsize = self.settings.max_datagram
        while not self._stop.is_set():
            try:
                data = self.read_stream.recv(bufsize)
            except (socket.timeout, BlockingIOError, InterruptedError):
                continue
            except OSError as e:
                self.emit_error(f"read error: {e}")
                return
            if not data:
                self.emit_error("connection closed")
                return
            self.emit(MessageEvent(self.kind, self.key, None, data, self.seq.next(), now_ms()))

    def send(self, data: bytes) -> int:
        try:
            self.stream.sendall(data)
        except OSError as e:
            raise WriteError(f"send error: {e}") from e
        return len(data)

    def close(self) -> None:
        self.read_stream.close()
        self.stream.close()
