import socket
from typing import Optional

from harness.errors import BindError, WriteError
from harness.utils.addr import family_for, parse_addr
from harness.utils.clock import ts


class Forwarder:
    """
    Fire-and-forget datagrams from transient sockets.
    These sockets never enter a registry and are closed right after the send.
    """

    def __init__(self, debug=False):
        self.debug = debug
        self.sent = 0

    def send(self, data: bytes, to_addr: str, bind_addr: Optional[str] = None) -> int:
        try:
            dest = parse_addr(to_addr)
        except ValueError as e:
            raise WriteError(f"send error: {e}") from e

        if bind_addr is None:
            family = family_for(dest[0])
            local = ("::" if family == socket.AF_INET6 else "0.0.0.0", 0)
        else:
            try:
                local = parse_addr(bind_addr)
            except ValueError as e:
                raise BindError(f"bind error: {e}") from e
            family = family_for(local[0])

        with socket.socket(family, socket.SOCK_DGRAM) as sock:
            try:
                sock.bind(local)
            except OSError as e:
                raise BindError(f"bind error: {e}") from e
            try:
                n = sock.sendto(data, dest)
            except OSError as e:
                raise WriteError(f"send error: {e}") from e
        self.sent += 1
        if self.debug:
            print(f"{ts()} [forwarder] {n} bytes to {to_addr} from transient socket {local[0]}:{local[1]}")
        return n
