"""
Progress delivery for long-running exports and imports.

Orchestrators are generators: they yield ProgressEvent objects and return their
terminal result. `drive` runs one to completion and republishes every event on
a ProgressChannel, which fans out to any number of listeners (a UI stream and
a logger, say) and is closed exactly once with either the result or the error.
"""

import logging
import queue
import threading
from typing import Any, Callable, Generator, Iterator, List, Optional

from .errors import Cancelled
from .models import ProgressEvent

logger = logging.getLogger(__name__)

_CLOSED = object()

Listener = Callable[[ProgressEvent], None]


class CancellationToken:
    """Shared flag the caller flips to stop an operation at its next checkpoint."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def reset(self) -> None:
        self._cancelled = False

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled()


class ProgressChannel:
    """Single-producer, multi-consumer broadcast of progress events.

    Late subscribers receive the most recent event immediately, so a progress
    view attached mid-operation does not start blank.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._queues: List[queue.Queue] = []
        self._done = threading.Event()
        self.last_event: Optional[ProgressEvent] = None
        self.closed = False
        self.result: Any = None
        self.error: Optional[BaseException] = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Registers a listener and returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)
            replay = self.last_event
        if replay is not None:
            listener(replay)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            if self.closed:
                raise RuntimeError("Cannot publish on a closed progress channel")
            self.last_event = event
            listeners = list(self._listeners)
            for q in self._queues:
                q.put(event)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener %r failed", listener)

    def close(self, result: Any = None, error: Optional[BaseException] = None) -> bool:
        """Closes the channel. Returns False if it was already closed."""
        with self._lock:
            if self.closed:
                return False
            self.closed = True
            self.result = result
            self.error = error
            for q in self._queues:
                q.put(_CLOSED)
            self._queues.clear()
        self._done.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the channel is closed. Returns False on timeout."""
        return self._done.wait(timeout)

    def iter_events(self) -> Iterator[ProgressEvent]:
        """Blocking iterator over events from now on (plus the last one), ending at close."""
        q: queue.Queue = queue.Queue()
        with self._lock:
            if self.last_event is not None:
                q.put(self.last_event)
            if self.closed:
                q.put(_CLOSED)
            else:
                self._queues.append(q)
        try:
            while True:
                item = q.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            with self._lock:
                if q in self._queues:
                    self._queues.remove(q)


def run_to_completion(operation: Generator[ProgressEvent, None, Any], on_event: Optional[Listener] = None) -> Any:
    """Exhausts an orchestrator generator and returns its terminal result."""
    while True:
        try:
            event = next(operation)
        except StopIteration as stop:
            return stop.value
        if on_event is not None:
            on_event(event)


def drive(operation: Generator[ProgressEvent, None, Any], channel: ProgressChannel) -> Any:
    """Runs an orchestrator, publishing each event, then closes the channel once."""
    try:
        result = run_to_completion(operation, channel.publish)
    except Exception as e:
        channel.close(error=e)
        raise
    channel.close(result=result)
    return result
