"""Per-run event channel drained by a dedicated dispatcher thread."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass

from agent_relay.engine.models import OutputEvent, RunCallbacks, RunCompletion

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _Message:
    event: OutputEvent | None = None
    completion: RunCompletion | None = None
    error: Exception | None = None


_CLOSE = object()


class RunChannel:
    """Ordered delivery of one run's events to its callbacks.

    Events are delivered in publish order. Exactly one terminal message
    (completion or error) is delivered, after which the channel closes and
    further publishes are dropped.
    """

    def __init__(self, run_id: str, callbacks: RunCallbacks) -> None:
        self.run_id = run_id
        self._callbacks = callbacks
        self._queue: queue.Queue[object] = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(
            target=self._dispatch,
            daemon=True,
            name=f"relay-dispatch-{run_id[:8]}",
        )
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: OutputEvent) -> None:
        with self._lock:
            if self._closed:
                return
            self._queue.put(_Message(event=event))

    def complete(self, completion: RunCompletion) -> bool:
        return self._finish(_Message(completion=completion))

    def fail(self, error: Exception) -> bool:
        return self._finish(_Message(error=error))

    def join(self, timeout: float | None = None) -> bool:
        """Wait until every queued message was dispatched."""

        if threading.current_thread() is self._thread:
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _finish(self, message: _Message) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._queue.put(message)
            self._queue.put(_CLOSE)
        return True

    def _dispatch(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                return
            if not isinstance(item, _Message):
                continue
            try:
                self._deliver(item)
            except Exception:
                logger.exception("Run %s subscriber callback failed", self.run_id)

    def _deliver(self, message: _Message) -> None:
        callbacks = self._callbacks
        if message.event is not None:
            if callbacks.on_event is not None:
                callbacks.on_event(message.event, self.run_id)
            return
        if message.completion is not None:
            if callbacks.on_complete is not None:
                callbacks.on_complete(message.completion, self.run_id)
            return
        if message.error is not None and callbacks.on_error is not None:
            callbacks.on_error(message.error, self.run_id)
