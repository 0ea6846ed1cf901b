import socket
from typing import Tuple


def format_source(ip, port):
    return f"[{ip}]:{port}" if ':' in ip else f"{ip}:{port}"


def family_for(host: str) -> int:
    return socket.AF_INET6 if ':' in host else socket.AF_INET


def parse_addr(addr: str) -> Tuple[str, int]:
    """
    "host:port" -> (host, port).
    IPv6 hosts must be bracketed: "[::1]:9000".
    """
    if not addr:
        raise ValueError("empty address")
    addr = addr.strip()
    if addr.startswith('['):
        end = addr.find(']')
        if end == -1 or addr[end + 1:end + 2] != ':':
            raise ValueError(f"invalid address: {addr!r}")
        host, port_s = addr[1:end], addr[end + 2:]
    else:
        host, sep, port_s = addr.rpartition(':')
        if not sep or ':' in host:
            raise ValueError(f"invalid address: {addr!r}")
    try:
        port = int(port_s)
    except ValueError:
        raise ValueError(f"invalid port in address: {addr!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range: {addr!r}")
    return host, port


def sockaddr_key(addr) -> str:
    """ (ip, port[, flow, scope]) as returned by recvfrom/accept -> "ip:port". """
    return format_source(addr[0], addr[1])
