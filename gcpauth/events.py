"""Observer hub for session change notifications."""

from __future__ import annotations

import asyncio
import inspect
import logging

from collections.abc import Awaitable, Callable

from .log import log_listener_error
from .types import SessionEvent, SessionEventType, SessionRecord


logger = logging.getLogger("gcpauth.auth")

# Listener functions (sync or async)
SessionListener = Callable[[SessionEvent], None] | Callable[[SessionEvent], Awaitable[None]]


class SessionEventEmitter:
    """Delivers ``session-added`` / ``session-removed`` events to listeners.

    Sync listeners run inline; async listeners are scheduled on the
    running event loop. A failing listener is logged and never stops
    delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: list[SessionListener] = []
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register ``listener``.

        Returns
        -------
        callable
            Calling it unsubscribes the listener.
        """
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: SessionListener) -> bool:
        """Remove ``listener``. Returns False if it was not subscribed."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, event_type: SessionEventType, sessions: list[SessionRecord]) -> SessionEvent:
        """Deliver an event to every listener subscribed at call time."""
        event = SessionEvent(event_type=event_type, sessions=tuple(sessions))
        logger.debug("Emitting %s for %d session(s)", event_type, len(event.sessions))
        for listener in list(self._listeners):
            if inspect.iscoroutinefunction(listener):
                self._schedule(listener, event)
                continue
            try:
                listener(event)  # type: ignore[misc]
            except Exception as exc:
                log_listener_error(event_type, exc)
        return event

    def _schedule(self, listener: SessionListener, event: SessionEvent) -> None:
        async def run_async() -> None:
            try:
                await listener(event)  # type: ignore[misc]
            except Exception as exc:
                log_listener_error(event.event_type, exc)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping async listener for %s", event.event_type)
            return
        task = loop.create_task(run_async())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
