"""Route tagged inbound channel events to the engines that own them."""
from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from deskcollab.core.logging import log_debug, log_error

EventHandler = Callable[[Mapping[str, Any]], Awaitable[None] | None]


class EventDispatcher:
    """Fan a single stream of ``(event_type, data)`` pairs out to handlers.

    Handlers may be plain callables or coroutine functions. A failing handler
    is logged and skipped so the remaining handlers still see the event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def register(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unregister(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(event_type, None)

    def handles(self, event_type: str) -> bool:
        return bool(self._handlers.get(event_type))

    async def dispatch(self, event_type: str, data: Mapping[str, Any] | None = None) -> int:
        """Deliver an event and return how many handlers completed."""

        handlers = list(self._handlers.get(event_type, ()))
        if not handlers:
            log_debug("No handler registered for channel event", event=event_type)
            return 0

        payload: Mapping[str, Any] = data or {}
        delivered = 0
        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as exc:
                log_error(
                    "Channel event handler failed",
                    event=event_type,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
        return delivered
