"""
Event Sinks

Engines push captured-traffic events into an EventSink and never read from
it. Several engines run on their own threads and share one sink, so every
implementation here is safe for concurrent emit() calls.
"""

import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import structlog

logger = structlog.get_logger()

Event = Tuple[str, Dict[str, Any], Optional[str]]


class EventSink(Protocol):
    """UI-facing push channel"""

    def emit(self, channel: str, payload: Dict[str, Any], session_id: Optional[str] = None) -> None:
        ...


class CallbackEventSink:
    """Serialises calls to a plain callable"""

    def __init__(self, callback: Callable[[str, Dict[str, Any], Optional[str]], None]):
        self._callback = callback
        self._lock = threading.Lock()

    def emit(self, channel: str, payload: Dict[str, Any], session_id: Optional[str] = None) -> None:
        with self._lock:
            self._callback(channel, payload, session_id)


class QueueEventSink:
    """
    Buffers events in a thread-safe queue

    Used by the foreground capture command and by tests that need to wait
    for events produced on an engine thread.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)

    def emit(self, channel: str, payload: Dict[str, Any], session_id: Optional[str] = None) -> None:
        self._queue.put((channel, payload, session_id))

    def get(self, timeout: Optional[float] = None) -> Event:
        """Block until the next event arrives (raises queue.Empty on timeout)"""
        return self._queue.get(timeout=timeout)

    def drain(self) -> List[Event]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def __len__(self) -> int:
        return self._queue.qsize()


class FanoutEventSink:
    """Delivers each event to several sinks"""

    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def add(self, sink: EventSink):
        self.sinks.append(sink)

    def emit(self, channel: str, payload: Dict[str, Any], session_id: Optional[str] = None) -> None:
        for sink in list(self.sinks):
            try:
                sink.emit(channel, payload, session_id)
            except Exception as e:
                logger.error("Event sink failed", channel=channel, sink=type(sink).__name__, error=str(e))
