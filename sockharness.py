import argparse
import json
import os
import shlex
import sys
from typing import Iterable, Optional, TextIO

import yaml
from setproctitle import setproctitle

from forwarder import Forwarder
from harness.errors import HarnessError
from harness.registry import Registry
from harness.settings import Settings
from harness.sink import EventSink, PrintSink
from harness.tcp_client import TcpClientEndpoint
from harness.tcp_server import TcpServerEndpoint
from harness.udp import UdpEndpoint, send_from
from harness.utils.clock import ts
from payload import decode_b64

CONFIG_PATHS = ("/etc/sockharness/config.yaml", "config.yaml")


class UsageError(HarnessError):
    pass


class Harness:
    """
    Owns one registry per endpoint kind. Created at application start;
    shutdown() (or leaving the `with` block) stops every endpoint.

    Every command is synchronous and returns a status line or raises HarnessError.
    Payloads come in base64 and are decoded before any socket is touched.
    """

    # command -> (method, required args, optional args)
    COMMANDS = {
        "start-udp-server": ("start_udp_server", 1, 0),
        "stop-udp-server": ("stop_udp_server", 0, 1),
        "udp-send": ("udp_send", 2, 0),
        "udp-send-from": ("udp_send_from", 3, 0),
        "start-udp-client": ("start_udp_client", 1, 0),
        "stop-udp-client": ("stop_udp_client", 0, 1),
        "udp-client-send-from": ("udp_client_send_from", 3, 0),
        "start-tcp-server": ("start_tcp_server", 1, 0),
        "stop-tcp-server": ("stop_tcp_server", 0, 1),
        "tcp-server-send": ("tcp_server_send", 3, 0),
        "start-tcp-client": ("start_tcp_client", 1, 0),
        "stop-tcp-client": ("stop_tcp_client", 0, 1),
        "tcp-client-send": ("tcp_client_send", 2, 0),
        "status": ("status_line", 0, 0),
        "shutdown": ("shutdown", 0, 0),
    }

    def __init__(self, sink: Optional[EventSink] = None, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.sink = sink if sink is not None else PrintSink(self.settings.debug)
        lock_timeout = self.settings.lock_timeout
        self.udp_servers = Registry("UDP server", lock_timeout)
        self.udp_clients = Registry("UDP client", lock_timeout)
        self.tcp_servers = Registry("TCP server", lock_timeout)
        self.tcp_clients = Registry("TCP client", lock_timeout)
        self.forwarder = Forwarder(debug=self.settings.debug)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()

    # --- UDP server ---
    def start_udp_server(self, bind_addr: str) -> str:
        self.udp_servers.start(bind_addr, lambda k: UdpEndpoint("udp:server", k, self.sink, self.settings))
        return f"UDP server started on {bind_addr}"

    def stop_udp_server(self, bind_addr: Optional[str] = None) -> str:
        self.udp_servers.stop(bind_addr)
        return f"UDP server stopped on {bind_addr}" if bind_addr else "All UDP servers stopped"

    def udp_send(self, to_addr: str, data_b64: str) -> str:
        data = decode_b64(data_b64)
        n = self.forwarder.send(data, to_addr)
        return f"sent {n} bytes to {to_addr}"

    def udp_send_from(self, bind_addr: str, to_addr: str, data_b64: str) -> str:
        data = decode_b64(data_b64)
        n = send_from(self.udp_servers, self.forwarder, bind_addr, to_addr, data)
        return f"sent {n} bytes to {to_addr} from {bind_addr}"

    # --- UDP client ---
    def start_udp_client(self, bind_addr: str) -> str:
        self.udp_clients.start(bind_addr, lambda k: UdpEndpoint("udp:client", k, self.sink, self.settings))
        return f"UDP client started on {bind_addr}"

    def stop_udp_client(self, bind_addr: Optional[str] = None) -> str:
        self.udp_clients.stop(bind_addr)
        return f"UDP client stopped on {bind_addr}" if bind_addr else "All UDP clients stopped"

    def udp_client_send_from(self, bind_addr: str, to_addr: str, data_b64: str) -> str:
        data = decode_b64(data_b64)
        n = send_from(self.udp_clients, self.forwarder, bind_addr, to_addr, data)
        return f"sent {n} bytes to {to_addr} from {bind_addr}"

    # --- TCP server ---
    def start_tcp_server(self, bind_addr: str) -> str:
        self.tcp_servers.start(bind_addr, lambda k: TcpServerEndpoint(k, self.sink, self.settings))
        return f"TCP server started on {bind_addr}"

    def stop_tcp_server(self, bind_addr: Optional[str] = None) -> str:
        self.tcp_servers.stop(bind_addr)
        return f"TCP server stopped on {bind_addr}" if bind_addr else "All TCP servers stopped"

    def tcp_server_send(self, bind_addr: str, to_peer: Optional[str], data_b64: str) -> str:
        data = decode_b64(data_b64)
        with self.tcp_servers.lookup(bind_addr) as ep:
            sent = ep.send(data, to_peer)
        if to_peer:
            return f"sent {len(data)} bytes to {to_peer} ({sent} client)"
        return f"broadcast {len(data)} bytes to {sent} client(s)"

    # --- TCP client ---
    def start_tcp_client(self, remote_addr: str) -> str:
        self.tcp_clients.start(remote_addr, lambda k: TcpClientEndpoint(k, self.sink, self.settings))
        return f"TCP client connected to {remote_addr}"

    def stop_tcp_client(self, remote_addr: Optional[str] = None) -> str:
        self.tcp_clients.stop(remote_addr)
        return f"TCP client disconnected from {remote_addr}" if remote_addr else "All TCP clients disconnected"

    def tcp_client_send(self, remote_addr: str, data_b64: str) -> str:
        data = decode_b64(data_b64)
        with self.tcp_clients.lookup(remote_addr) as ep:
            n = ep.send(data)
        return f"sent {n} bytes to {remote_addr}"

    # --- lifecycle ---
    def status(self) -> dict:
        return {
            "udp:server": self.udp_servers.snapshot(),
            "udp:client": self.udp_clients.snapshot(),
            "tcp:server": self.tcp_servers.snapshot(),
            "tcp:client": self.tcp_clients.snapshot(),
        }

    def status_line(self) -> str:
        return json.dumps(self.status(), sort_keys=True)

    def shutdown(self) -> str:
        stopped = 0
        for registry in (self.tcp_clients, self.tcp_servers, self.udp_clients, self.udp_servers):
            stopped += len(registry.stop())
        return f"stopped {stopped} endpoint(s)"

    def execute(self, command: str, *args: Optional[str]) -> str:
        try:
            method, required, optional = self.COMMANDS[command]
        except KeyError:
            raise UsageError(f"unknown command: {command}") from None
        if not required <= len(args) <= required + optional:
            raise UsageError(f"{command} takes {required}"
                             + (f"-{required + optional}" if optional else "")
                             + f" argument(s), got {len(args)}")
        return getattr(self, method)(*args)


def load_config(path: Optional[str] = None) -> dict:
    """
    An explicit path must exist. Otherwise /etc/sockharness/config.yaml, then
    ./config.yaml; with neither present the defaults apply.
    """
    if path:
        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}
    for p in CONFIG_PATHS:
        if os.path.exists(p):
            with open(p, 'r') as f:
                return yaml.safe_load(f) or {}
    print(f"{ts()} No config file found ({', '.join(CONFIG_PATHS)}). Using defaults.")
    return {}


def start_configured(harness: Harness, cfg: dict) -> int:
    """Start every endpoint listed in the config; a failure is reported and skipped."""
    plan = [
        ("udp_servers", "bind", harness.start_udp_server),
        ("udp_clients", "bind", harness.start_udp_client),
        ("tcp_servers", "bind", harness.start_tcp_server),
        ("tcp_clients", "remote", harness.start_tcp_client),
    ]
    started = 0
    for section, field, start in plan:
        for entry in cfg.get(section) or []:
            addr = entry.get(field) if isinstance(entry, dict) else entry
            try:
                print(f"{ts()} {start(addr)}")
                started += 1
            except HarnessError as e:
                print(f"{ts()} [!] {section} {addr}: {e}", file=sys.stderr)
    return started


def parse_command(line: str):
    """ 'tcp-server-send 0.0.0.0:9100 - aGk=' -> ('tcp-server-send', ['0.0.0.0:9100', None, 'aGk=']) """
    parts = shlex.split(line, comments=True)
    if not parts:
        return None, []
    return parts[0], [None if a == '-' else a for a in parts[1:]]


def run_commands(harness: Harness, lines: Iterable[str], out: Optional[TextIO] = None) -> None:
    out = out or sys.stdout
    for line in lines:
        try:
            command, args = parse_command(line)
        except ValueError as e:
            print(f"ERROR: {e}", file=out)
            continue
        if command is None:
            continue
        if command in ("quit", "exit"):
            return
        try:
            result = harness.execute(command, *args)
        except HarnessError as e:
            print(f"ERROR: {e}", file=out)
            continue
        print(result, file=out)


def main(argv=None) -> int:
    setproctitle('sockharness')
    parser = argparse.ArgumentParser(
        prog="sockharness",
        description=(
            "Open UDP/TCP listeners and connections, print every inbound chunk "
            "as an event, and send base64 payloads to peers. Commands are read "
            "from stdin, one per line; '-' stands for an omitted optional argument."
        ),
    )
    parser.add_argument("--config", help="YAML config (default: /etc/sockharness/config.yaml, then ./config.yaml)")
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config)
        settings = Settings.from_config(cfg)
    except (OSError, yaml.YAMLError, ValueError) as e:
        print(f"ERROR: bad config: {e}", file=sys.stderr)
        return 2

    with Harness(PrintSink(settings.debug), settings) as harness:
        start_configured(harness, cfg)
        try:
            run_commands(harness, sys.stdin)
        except KeyboardInterrupt:
            print("Exiting.")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
