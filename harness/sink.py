import json
import queue
from typing import Callable, Protocol

from harness.event import Event
from harness.utils.clock import ts
from payload import event_payload


class EventSink(Protocol):
    def emit(self, ev: Event) -> None: ...


class QueueSink:
    def __init__(self, maxsize: int = 0):
        self.queue: "queue.Queue[Event]" = queue.Queue(maxsize)

    def emit(self, ev: Event) -> None:
        self.queue.put_nowait(ev)

    def get(self, timeout: float = None) -> Event:
        return self.queue.get(timeout=timeout)


class CallbackSink:
    def __init__(self, fn: Callable[[str, dict], None]):
        self.fn = fn

    def emit(self, ev: Event) -> None:
        self.fn(ev.topic, event_payload(ev))


class PrintSink:
    def __init__(self, debug: bool = True):
        self.debug = debug

    def emit(self, ev: Event) -> None:
        if self.debug:
            print(f"{ts()} {ev.topic} => {json.dumps(event_payload(ev))}")


def deliver(sink: EventSink, ev: Event) -> None:
    """Best-effort push to the observer; a failing sink never stops a worker."""
    try:
        sink.emit(ev)
    except Exception as e:
        print(f"{ts()} [!] event delivery failed for {ev.topic}: {type(e).__name__}: {e}")
