"""
Typed publish/subscribe for observability.

Events and payload keys:

    app:init       {"config"}
    app:start      {"transport", "port"}
    app:shutdown   {"graceful"}
    tool:called    {"tool_name", "input", "context"}
    tool:success   {"tool_name", "result", "duration"}
    tool:error     {"tool_name", "error", "duration"}
    error          {"error", "source"}

Listeners for one emit run concurrently; a failing listener is logged and
never affects the emitter or the other listeners.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("appkit.events")

EventHandler = Callable[[dict[str, Any]], Any]
AnyEventHandler = Callable[[str, dict[str, Any]], Any]
Unsubscribe = Callable[[], None]


class MaxListenersExceededError(Exception):
    def __init__(self, event: str, max_listeners: int):
        super().__init__(
            f"Max listeners ({max_listeners}) exceeded for event '{event}'. "
            "Possible memory leak detected. Consider using once() or unsubscribing."
        )


@dataclass(eq=False)
class _Listener:
    handler: EventHandler
    once: bool


async def _invoke(handler: Callable[..., Any], *args: Any) -> None:
    outcome = handler(*args)
    if inspect.isawaitable(outcome):
        await outcome


class EventEmitter:
    """
    Args:
        max_listeners: Per-event cap (0 disables the check)
        log_errors: Log listener failures
    """

    def __init__(self, max_listeners: int = 50, log_errors: bool = True):
        self.max_listeners = max_listeners
        self.log_errors = log_errors
        self._listeners: dict[str, list[_Listener]] = {}
        self._wildcard: list[AnyEventHandler] = []

    def on(self, event: str, handler: EventHandler) -> Unsubscribe:
        return self._add(event, handler, once=False)

    def once(self, event: str, handler: EventHandler) -> Unsubscribe:
        return self._add(event, handler, once=True)

    def on_any(self, handler: AnyEventHandler) -> Unsubscribe:
        self._wildcard.append(handler)

        def unsubscribe() -> None:
            if handler in self._wildcard:
                self._wildcard.remove(handler)

        return unsubscribe

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        listeners = list(self._listeners.get(event, []))

        # Drop one-time listeners before running so re-entrant emits skip them.
        if any(listener.once for listener in listeners):
            remaining = [listener for listener in self._listeners.get(event, []) if not listener.once]
            if remaining:
                self._listeners[event] = remaining
            else:
                self._listeners.pop(event, None)

        results = await asyncio.gather(
            *(_invoke(listener.handler, payload) for listener in listeners),
            *(_invoke(handler, event, payload) for handler in list(self._wildcard)),
            return_exceptions=True,
        )

        if self.log_errors:
            for result in results:
                if isinstance(result, Exception):
                    logger.error(
                        "Event handler error",
                        exc_info=result,
                        extra={"log_data": {"event": event}},
                    )

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is not None:
            self._listeners.pop(event, None)
        else:
            self._listeners.clear()
            self._wildcard.clear()

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def get_stats(self) -> dict[str, Any]:
        by_event = {event: len(listeners) for event, listeners in self._listeners.items()}
        return {
            "total_listeners": sum(by_event.values()),
            "listeners_by_event": by_event,
            "wildcard_listeners": len(self._wildcard),
            "listeners": [
                {
                    "event": event,
                    "once": listener.once,
                    "handler_name": getattr(listener.handler, "__name__", None),
                }
                for event, listeners in self._listeners.items()
                for listener in listeners
            ],
        }

    def _add(self, event: str, handler: EventHandler, once: bool) -> Unsubscribe:
        if self.max_listeners > 0 and self.listener_count(event) >= self.max_listeners:
            raise MaxListenersExceededError(event, self.max_listeners)

        listener = _Listener(handler=handler, once=once)
        self._listeners.setdefault(event, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event, [])
            if listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(event, None)

        return unsubscribe
