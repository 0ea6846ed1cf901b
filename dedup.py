from typing import Optional, Tuple

from cryptography.hazmat.primitives import hashes

from harness.utils.clock import monotonic_ns


def datagram_digest(source: str, data: bytes) -> bytes:
    h = hashes.Hash(hashes.SHA256())
    h.update(source.encode())
    h.update(len(data).to_bytes(8, "big"))
    h.update(data)
    return h.finalize()


class DuplicateWindow:
    """
    Remembers only the last datagram seen on one endpoint.
    A datagram is a duplicate when it matches that one (same source, length
    and bytes) and arrives less than `window` seconds after it.
    Advisory only: nothing is ever dropped.
    """

    def __init__(self, window=0.05):
        self.window_ns = int(window * 1e9)
        self.last: Optional[Tuple[bytes, int]] = None

    def check(self, source: str, data: bytes, now_ns: Optional[int] = None) -> bool:
        now = monotonic_ns() if now_ns is None else now_ns
        digest = datagram_digest(source, data)
        dup = (self.last is not None
               and self.last[0] == digest
               and now - self.last[1] < self.window_ns)
        self.last = (digest, now)
        return dup
