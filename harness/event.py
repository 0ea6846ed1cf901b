from dataclasses import dataclass
from typing import Literal, Optional, Union

EndpointKind = Literal["udp:server", "udp:client", "tcp:server", "tcp:client"]


@dataclass(slots=True)
class MessageEvent:
    kind: EndpointKind
    endpoint: str            # bind address (servers, UDP clients) or remote address (TCP client)
    peer: Optional[str]      # source of the chunk; None for a TCP client (always its remote)
    data: bytes
    seq: int
    ts_ms: int
    dup: Optional[bool] = None   # UDP only

    @property
    def topic(self) -> str:
        return f"{self.kind}:message"


@dataclass(slots=True)
class PeerEvent:
    kind: EndpointKind
    endpoint: str
    peer: str
    connected: bool

    @property
    def topic(self) -> str:
        suffix = "client_connected" if self.connected else "client_disconnected"
        return f"{self.kind}:{suffix}"


@dataclass(slots=True)
class ErrorEvent:
    kind: EndpointKind
    endpoint: str
    error: str

    @property
    def topic(self) -> str:
        return f"{self.kind}:error"


Event = Union[MessageEvent, PeerEvent, ErrorEvent]
