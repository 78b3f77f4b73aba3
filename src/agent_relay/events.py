"""Event sink interface and bundled sink implementations."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RelayEvent:
    """Event delivered to subscribers of direct runs and pipeline runs."""

    type: str
    run_id: str
    data: dict[str, Any] = field(default_factory=dict)
    pipeline_id: str | None = None
    agent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "run_id": self.run_id, "data": self.data}
        if self.pipeline_id is not None:
            payload["pipeline_id"] = self.pipeline_id
        if self.agent_id is not None:
            payload["agent_id"] = self.agent_id
        return payload


class EventSink(Protocol):
    """Receives streamed events for delivery to subscribers."""

    def publish(self, event: RelayEvent) -> None:
        """Deliver one event."""


class CollectingSink:
    """Keeps events in memory; used by tests and embedding callers."""

    def __init__(self) -> None:
        self._events: list[RelayEvent] = []
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

    def publish(self, event: RelayEvent) -> None:
        with self._changed:
            self._events.append(event)
            self._changed.notify_all()

    @property
    def events(self) -> list[RelayEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: str) -> list[RelayEvent]:
        return [event for event in self.events if event.type == event_type]

    def wait_for(
        self,
        event_type: str,
        timeout: float = 10.0,
        *,
        where: Callable[[RelayEvent], bool] | None = None,
    ) -> RelayEvent | None:
        """Block until a matching event arrives; returns the first one."""

        def _matches(event: RelayEvent) -> bool:
            return event.type == event_type and (where is None or where(event))

        with self._changed:
            self._changed.wait_for(lambda: any(_matches(event) for event in self._events), timeout)
            for event in self._events:
                if _matches(event):
                    return event
        return None


class CallbackSink:
    """Forwards events to a plain function."""

    def __init__(self, callback: Callable[[RelayEvent], None]) -> None:
        self._callback = callback

    def publish(self, event: RelayEvent) -> None:
        self._callback(event)


class LoggingSink:
    """Writes events to the module logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def publish(self, event: RelayEvent) -> None:
        logger.log(self._level, "event %s run=%s %s", event.type, event.run_id, event.data)


def safe_publish(sink: EventSink | None, event: RelayEvent) -> None:
    """Publish without letting a failing sink break the caller."""

    if sink is None:
        return
    try:
        sink.publish(event)
    except Exception:
        logger.exception("Event sink failed for %s", event.type)
