import base64
import binascii

from harness.errors import EncodingError
from harness.event import ErrorEvent, Event, MessageEvent, PeerEvent


def decode_b64(data_b64: str) -> bytes:
    try:
        return base64.b64decode(data_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"base64 decode error: {e}") from e


def encode_b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _endpoint_field(kind: str) -> str:
    # a TCP client is identified by where it connects to, everything else by where it binds
    return "remote" if kind == "tcp:client" else "bind"


def event_payload(ev: Event) -> dict:
    """
    Wire shape of an event for the surrounding application.
    Binary data always crosses the boundary base64-encoded.
    """
    out = {_endpoint_field(ev.kind): ev.endpoint}
    if isinstance(ev, MessageEvent):
        if ev.peer is not None:
            out["from"] = ev.peer
        out["data"] = encode_b64(ev.data)
        out["seq"] = ev.seq
        out["ts_ms"] = ev.ts_ms
        if ev.dup is not None:
            out["dup"] = ev.dup
    elif isinstance(ev, PeerEvent):
        out["peer"] = ev.peer
    elif isinstance(ev, ErrorEvent):
        out["error"] = ev.error
    else:
        raise TypeError(f"not an event: {ev!r}")
    return out
