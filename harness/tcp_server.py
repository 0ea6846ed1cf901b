import selectors
import socket
import threading
from typing import Dict, List, Optional

from harness.errors import BindError, PeerNotFound, WriteError
from harness.event import MessageEvent, PeerEvent
from harness.registry import Endpoint
from harness.settings import Settings
from harness.sink import EventSink
from harness.utils.addr import family_for, parse_addr, sockaddr_key
from harness.utils.clock import now_ms, ts


class TcpServerEndpoint(Endpoint):
    """
    Listening socket plus every accepted peer, polled by one worker.

    Each pass accepts whatever is pending, reads once from every readable
    peer and sleeps for the poll interval. `peers` and `selector` are shared
    with the control path; every access holds `peers_lock` for a single
    operation (one insert, one remove, one read or one write).
    """
    kind = "tcp:server"

    def __init__(self, key: str, sink: EventSink, settings: Settings):
        super().__init__(key, sink, settings)
        self.listener = listen_tcp(key)
        self.peers: Dict[str, socket.socket] = {}
        self.peers_lock = threading.Lock()
        self.selector = selectors.DefaultSelector()
        if settings.debug:
            print(f"{ts()} tcp:server listening on {key}")

    def _run(self) -> None:
        bufsize = self.settings.max_datagram
        while not self._stop.is_set():
            try:
                self._accept_pending()
                self._read_peers(bufsize)
            except Exception as e:
                # only stop() ends this worker
                self.emit_error(f"poll error: {type(e).__name__}: {e}")
            self._stop.wait(self.settings.tcp_poll_interval)

    def _accept_pending(self) -> None:
        while True:
            try:
                conn, addr = self.listener.accept()
            except (BlockingIOError, InterruptedError):
                return
            except OSError as e:
                self.emit_error(f"accept error: {e}")
                return
            peer = sockaddr_key(addr)
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            conn.settimeout(self.settings.write_timeout)
            with self.peers_lock:
                stale = self._forget(peer)
                self.peers[peer] = conn
                self.selector.register(conn, selectors.EVENT_READ, peer)
            if stale is not None:
                stale.close()
            self.emit(PeerEvent(self.kind, self.key, peer, connected=True))

    def _forget(self, peer: str) -> Optional[socket.socket]:
        """Drop a peer from the map and the selector. Caller holds peers_lock."""
        sock = self.peers.pop(peer, None)
        if sock is not None:
            self.selector.unregister(sock)
        return sock

    def _read_peers(self, bufsize: int) -> None:
        with self.peers_lock:
            if not self.peers:
                return
            ready = [(key.fileobj, key.data) for key, _ in self.selector.select(0)]

        for sock, peer in ready:
            closed = False
            with self.peers_lock:
                if self.peers.get(peer) is not sock:
                    continue  # dropped by a broadcast in the meantime
                try:
                    data = sock.recv(bufsize)
                except (BlockingIOError, socket.timeout, InterruptedError):
                    continue
                except OSError:
                    # read errors and orderly closes look the same to the observer
                    data = b""
                if not data:
                    self._forget(peer)
                    closed = True
            if closed:
                sock.close()
                self.emit(PeerEvent(self.kind, self.key, peer, connected=False))
            else:
                self.emit(MessageEvent(self.kind, self.key, peer, data, self.seq.next(), now_ms()))

    def send(self, data: bytes, peer: Optional[str] = None) -> int:
        """
        Write to one peer, or broadcast to all of them when peer is None.
        Returns the number of peers written.

        A unicast failure is raised and leaves the peer in place (the worker
        notices dead peers on its own). A broadcast drops every peer whose write
        fails: a peer that can't take writes is assumed dead.
        """
        if peer is not None:
            with self.peers_lock:
                sock = self.peers.get(peer)
                if sock is None:
                    raise PeerNotFound(f"peer not connected: {peer}")
                try:
                    sock.sendall(data)
                except OSError as e:
                    raise WriteError(f"send error: {e}") from e
            return 1

        with self.peers_lock:
            targets = list(self.peers.items())
        sent = 0
        for key, sock in targets:
            with self.peers_lock:
                if self.peers.get(key) is not sock:
                    continue  # gone since the snapshot
                try:
                    sock.sendall(data)
                    sent += 1
                    continue
                except OSError:
                    self._forget(key)
            sock.close()
            self.emit(PeerEvent(self.kind, self.key, key, connected=False))
        return sent

    def peer_keys(self) -> List[str]:
        with self.peers_lock:
            return sorted(self.peers)

    def describe(self) -> dict:
        out = super().describe()
        out["peers"] = self.peer_keys()
        return out

    def close(self) -> None:
        with self.peers_lock:
            peers = list(self.peers.values())
            self.peers.clear()
            self.selector.close()
        for sock in peers:
            sock.close()
        self.listener.close()


def listen_tcp(bind_addr: str, backlog: int = 128) -> socket.socket:
    try:
        host, port = parse_addr(bind_addr)
    except ValueError as e:
        raise BindError(f"bind error: {e}") from e
    listener = socket.socket(family_for(host), socket.SOCK_STREAM)
    try:
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((host, port))
        listener.listen(backlog)
        listener.setblocking(False)
    except OSError as e:
        listener.close()
        raise BindError(f"bind error: {e}") from e
    return listener
