import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .models import DomainEvent

LOGGER = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True)
class HandlerFailure:
    event_key: str
    error: str


class EventChannel:
    """Bounded FIFO between the normalizer and the event sinks.

    With a consumer thread running, ``publish`` blocks while the channel is
    full. Without one, published events are handled in the caller's thread
    whenever the channel fills up or ``wait_drained`` is called.
    """

    def __init__(self, handler: Callable[[DomainEvent], None], maxsize: int = 1000) -> None:
        if maxsize <= 0:
            raise ValueError("channel capacity must be positive")
        self._handler = handler
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._failures: list[HandlerFailure] = []
        self._failures_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _handle(self, event: DomainEvent) -> None:
        try:
            self._handler(event)
        except Exception as error:
            LOGGER.exception("handling %s failed", event.event_key)
            with self._failures_lock:
                self._failures.append(HandlerFailure(event.event_key, str(error)))

    def _drain_inline(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                if isinstance(item, DomainEvent):
                    self._handle(item)
            finally:
                self._queue.task_done()

    def publish(self, event: DomainEvent) -> None:
        if not self.running and self._queue.full():
            self._drain_inline()
        self._queue.put(event)

    def _consume(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, DomainEvent):
                    self._handle(item)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._consume, name="event-channel", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        if not self.running or self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def wait_drained(self) -> list[HandlerFailure]:
        """Block until every published event was handled; return and reset failures."""
        if self.running:
            self._queue.join()
        else:
            self._drain_inline()
        with self._failures_lock:
            failures, self._failures = self._failures, []
        return failures
