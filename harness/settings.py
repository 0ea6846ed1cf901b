import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

_TIMING = ("recv_timeout", "tcp_poll_interval", "dup_window",
           "connect_timeout", "write_timeout", "lock_timeout")

_ENV_OVERRIDES = {
    "recv_timeout": "SOCKHARNESS_RECV_TIMEOUT",
    "tcp_poll_interval": "SOCKHARNESS_POLL_INTERVAL",
    "dup_window": "SOCKHARNESS_DUP_WINDOW",
    "connect_timeout": "SOCKHARNESS_CONNECT_TIMEOUT",
    "write_timeout": "SOCKHARNESS_WRITE_TIMEOUT",
}


@dataclass(frozen=True)
class Settings:
    recv_timeout: float = 0.1        # UDP / TCP client read timeout, bounds stop latency
    tcp_poll_interval: float = 0.01  # TCP server sleep between polling passes
    dup_window: float = 0.05
    connect_timeout: float = 5.0
    write_timeout: float = 5.0
    lock_timeout: float = 5.0
    max_datagram: int = 65536
    debug: bool = True

    @classmethod
    def from_config(cls, cfg: Optional[Mapping] = None,
                    environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from the parsed YAML config.
        Timing values live under cfg['timing']; environment variables win over the file.
        """
        cfg = cfg or {}
        environ = os.environ if environ is None else environ
        values = {}
        timing = cfg.get("timing") or {}
        for name, value in timing.items():
            if name not in _TIMING:
                raise ValueError(f"unknown timing setting: {name!r}")
            values[name] = float(value)
        for name, var in _ENV_OVERRIDES.items():
            if environ.get(var):
                values[name] = float(environ[var])
        if "max_datagram" in cfg:
            values["max_datagram"] = int(cfg["max_datagram"])
        if "debug" in cfg:
            values["debug"] = bool(cfg["debug"])
        return replace(cls(), **values)
