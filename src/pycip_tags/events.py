"""Listener registry for controller events."""

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

CONNECTED = "Connected"
DISCONNECTED = "Disconnected"
TAG_CHANGED = "TagChanged"
TAG_ERROR = "TagError"

EVENTS = (CONNECTED, DISCONNECTED, TAG_CHANGED, TAG_ERROR)

Listener = Callable[..., Any]


class EventEmitter:
    """
    Named events with any number of listeners each.

    Listeners run on the emitting thread (the controller's worker). The
    listener list is copied before dispatch, so listeners added during an
    emission only see later events. A listener that raises is logged and does
    not stop the others.
    """

    def __init__(self, events: tuple[str, ...] = EVENTS) -> None:
        self._events = events
        self._listeners: dict[str, list[Listener]] = {name: [] for name in events}
        self._lock = threading.Lock()

    def _check(self, event: str) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}; expected one of {', '.join(self._events)}")

    def on(self, event: str, listener: Listener) -> None:
        self._check(event)
        with self._lock:
            self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        """Remove a listener; removing one that is not registered is a no-op."""
        self._check(event)
        with self._lock:
            try:
                self._listeners[event].remove(listener)
            except ValueError:
                pass

    def emit(self, event: str, *args: Any) -> None:
        self._check(event)
        with self._lock:
            listeners = list(self._listeners[event])
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                logger.exception("%s listener %r failed", event, listener)

    def listener_count(self, event: str) -> int:
        self._check(event)
        with self._lock:
            return len(self._listeners[event])
