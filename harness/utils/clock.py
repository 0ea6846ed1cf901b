import time

monotonic_ns = time.monotonic_ns


def ts() -> str:
    return str(time.time())


def now_ms() -> int:
    return time.time_ns() // 1_000_000
