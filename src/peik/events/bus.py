"""Observer registry decoupling the session engine from its UI."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from peik.types import EngineEvent, EventType

_logger = logging.getLogger(__name__)

# Sentinel used for wildcard subscriptions (receive all events)
_WILDCARD = "*"

# Type alias for handlers (sync or async callables taking an EngineEvent)
Handler = Callable[[EngineEvent], Any]


class EventEmitter:
    """Ordered, synchronous pub/sub registry.

    - Subscribe to a specific ``EventType`` or wildcard ``"*"``.
    - ``emit()`` calls handlers synchronously in subscription order, so
      events for one chat reach observers in state-machine order.
    - A handler that raises is logged and skipped; the others still run.
    - Coroutine handlers are scheduled on the running loop; their
      failures are logged the same way.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[EngineEvent] = []
        self._max_history = max_history
        self._pending: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Register *handler* for *event_type* (or ``"*"`` for all)."""
        key = self._key(event_type)
        self._handlers.setdefault(key, []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Remove *handler* from *event_type*."""
        handlers = self._handlers.get(self._key(event_type), [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> EngineEvent:
        """Build and dispatch an event.  Never raises."""
        event = EngineEvent(type=event_type, data=data or {})
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(_WILDCARD, []))
        for handler in handlers:
            self._call_handler(handler, event)
        return event

    @property
    def history(self) -> list[EngineEvent]:
        """Return a copy of the event history."""
        return list(self._history)

    def clear(self) -> None:
        """Remove all handlers and history."""
        self._handlers.clear()
        self._history.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    def _call_handler(self, handler: Handler, event: EngineEvent) -> None:
        try:
            result = handler(event)
        except Exception:
            _logger.exception(
                "Listener %s raised for event %s",
                getattr(handler, "__name__", handler), event.type.value,
            )
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_async_done)

    def _on_async_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.error("Async listener failed", exc_info=exc)
