"""Synchronous publish/subscribe used by the registry and the autopilot."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

Handler = Callable[..., Any]


class EventEmitter:
    """Insertion-ordered, synchronous event delivery keyed by event name.

    Handlers run on the caller's stack, so listeners observe every event
    before the emitter continues. Exceptions raised by a handler propagate to
    the emitter.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Handler:
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, *args: Any) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        for handler in list(handlers):
            # skip handlers removed by an earlier handler in this emission
            if handler in handlers:
                handler(*args)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def remove_all_listeners(self) -> None:
        self._handlers.clear()


__all__ = ["EventEmitter", "Handler"]
