import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Set

from harness.errors import AlreadyRunning, InternalError, NotRunning
from harness.event import EndpointKind, ErrorEvent, Event
from harness.settings import Settings
from harness.sink import EventSink, deliver
from harness.utils.clock import ts


class SequenceCounter:
    """Per-endpoint chunk counter: 1, 2, 3, ... wrapping at 2**64."""
    __slots__ = ("value",)
    MODULUS = 1 << 64

    def __init__(self, start: int = 0):
        self.value = start

    def next(self) -> int:
        self.value = (self.value + 1) % self.MODULUS
        return self.value


class Endpoint:
    """
    One live socket plus the worker thread that reads it.

    Lifecycle: the constructor binds/connects (and raises on failure), start()
    spawns the worker, stop() signals it, joins it and only then closes the
    sockets. The worker checks the stop event at least once per poll interval
    and does no I/O after seeing it.
    """
    kind: EndpointKind

    def __init__(self, key: str, sink: EventSink, settings: Settings):
        self.key = key
        self.sink = sink
        self.settings = settings
        self.seq = SequenceCounter()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        # serializes control-path writes with close()
        self.io_lock = threading.Lock()
        self.closed = False

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name=f"{self.kind}:{self.key}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        with self.io_lock:
            if not self.closed:
                self.close()
                self.closed = True
        if self.settings.debug:
            print(f"{ts()} {self.kind} {self.key} stopped")

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def emit(self, ev: Event) -> None:
        deliver(self.sink, ev)

    def emit_error(self, error: str) -> None:
        self.emit(ErrorEvent(self.kind, self.key, error))

    def describe(self) -> dict:
        return {"alive": self.alive}

    # --- implemented per endpoint kind ---
    def _run(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class Registry:
    """
    Live endpoints of one kind, keyed by address.

    The registry lock only guards the map and is never held across socket
    I/O. start() reserves the key under the lock, binds/connects outside it
    and publishes the endpoint under the lock again, so two starts for one
    key can't both succeed. Writes go through the endpoint's own io_lock,
    which stop() also takes before closing the sockets.
    """

    def __init__(self, name: str, lock_timeout: float = 5.0):
        self.name = name
        self.lock_timeout = lock_timeout
        self._endpoints: Dict[str, Endpoint] = {}
        self._pending: Set[str] = set()
        self._cancelled: Set[str] = set()
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise InternalError(f"lock error: {self.name} registry is stuck")
        try:
            yield
        finally:
            self._lock.release()

    def start(self, key: str, factory: Callable[[str], Endpoint]) -> Endpoint:
        with self._locked():
            if key in self._endpoints or key in self._pending:
                raise AlreadyRunning(f"{self.name} already running for {key}")
            self._pending.add(key)
        try:
            ep = factory(key)
        except BaseException:
            with self._locked():
                self._pending.discard(key)
                self._cancelled.discard(key)
            raise
        try:
            ep.start()
        except BaseException:
            ep.close()
            with self._locked():
                self._pending.discard(key)
                self._cancelled.discard(key)
            raise
        with self._locked():
            self._pending.discard(key)
            cancelled = key in self._cancelled
            self._cancelled.discard(key)
            if not cancelled:
                self._endpoints[key] = ep
        if cancelled:
            # a stop-all ran while this endpoint was still binding/connecting
            ep.stop()
            raise NotRunning(f"{self.name} for {key} was stopped while starting")
        return ep

    def stop(self, key: Optional[str] = None) -> List[Endpoint]:
        """Stop one endpoint, or all of them when key is None (never fails when empty)."""
        with self._locked():
            if key is None:
                stopping = list(self._endpoints.values())
                self._endpoints.clear()
                self._cancelled.update(self._pending)
            else:
                ep = self._endpoints.pop(key, None)
                if ep is None:
                    raise NotRunning(f"{self.name} not running for {key}")
                stopping = [ep]
        for ep in stopping:
            ep.stop()
        return stopping

    def get(self, key: str) -> Optional[Endpoint]:
        with self._locked():
            return self._endpoints.get(key)

    @contextmanager
    def lookup(self, key: str) -> Iterator[Endpoint]:
        """Yield the endpoint with its io_lock held; NotRunning once it's removed or closed."""
        ep = self.get(key)
        if ep is None:
            raise NotRunning(f"{self.name} not running for {key}")
        with ep.io_lock:
            if ep.closed:
                raise NotRunning(f"{self.name} not running for {key}")
            yield ep

    @contextmanager
    def lookup_optional(self, key: str) -> Iterator[Optional[Endpoint]]:
        ep = self.get(key)
        if ep is None:
            yield None
            return
        with ep.io_lock:
            yield None if ep.closed else ep

    def snapshot(self) -> Dict[str, dict]:
        with self._locked():
            endpoints = list(self._endpoints.items())
        return {k: ep.describe() for k, ep in endpoints}

    def __contains__(self, key: str) -> bool:
        with self._locked():
            return key in self._endpoints

    def __len__(self) -> int:
        with self._locked():
            return len(self._endpoints)
