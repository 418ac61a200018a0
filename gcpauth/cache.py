"""Single-flight session cache.

Collaborators call ``get_session()`` whenever they need credentials.
Concurrent callers share one in-flight acquisition, so at most one
browser sign-in runs at a time for a given cache.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging

from typing import TYPE_CHECKING

from .exceptions import CompletedOutOfBand
from .types import SESSION_REMOVED


if TYPE_CHECKING:
    from collections.abc import Sequence

    from .flow import AuthorizationFlow
    from .registry import SessionRegistry
    from .types import SessionEvent, SessionRecord


logger = logging.getLogger("gcpauth.auth")


class SessionCache:
    """Caches the session for a fixed scope set.

    Parameters
    ----------
    registry : SessionRegistry
        Source of stored sessions; also watched for removals.
    flow : AuthorizationFlow
        Interactive sign-in used when no stored session matches.
    scopes : sequence of str
        Scopes every returned session must cover.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        flow: AuthorizationFlow,
        scopes: Sequence[str],
    ) -> None:
        self.registry = registry
        self.flow = flow
        self.scopes = list(scopes)
        self._cached: SessionRecord | None = None
        self._in_flight: asyncio.Task[SessionRecord] | None = None
        self._unsubscribe = registry.events.subscribe(self._on_session_event)

    @property
    def cached_session(self) -> SessionRecord | None:
        return self._cached

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    async def get_session(self) -> SessionRecord:
        """Return a valid session, signing in only if necessary.

        Returns
        -------
        SessionRecord
            The cached session, a stored one, or a freshly created one.

        Raises
        ------
        AuthenticationError
            Whatever the sign-in raised; the next call starts over.
        """
        cached = self._cached
        if cached is not None:
            if not cached.is_expired():
                return cached
            logger.debug("Cached session %s expired", cached.id)
            self._cached = None

        task = self._in_flight
        if task is None:
            task = asyncio.get_running_loop().create_task(self._acquire())
            task.add_done_callback(self._on_acquired)
            self._in_flight = task
        else:
            logger.debug("Joining in-flight session acquisition")

        # One caller's cancellation must not abort the shared acquisition
        return await asyncio.shield(task)

    def clear_cache(self) -> None:
        """Forget the cached session and any in-flight acquisition."""
        self._cached = None
        self._in_flight = None

    def close(self) -> None:
        """Stop listening for registry events."""
        self._unsubscribe()

    async def _acquire(self) -> SessionRecord:
        sessions = await self.registry.get_sessions(self.scopes)
        if sessions:
            logger.debug("Using stored session %s", sessions[0].id)
            return sessions[0]

        try:
            return await self.flow.request_session(self.scopes)
        except CompletedOutOfBand as exc:
            sessions = await self.registry.get_sessions(self.scopes)
            if sessions:
                return sessions[0]
            if exc.session is None:
                raise
            return exc.session

    def _on_acquired(self, task: asyncio.Task[SessionRecord]) -> None:
        if self._in_flight is not task:
            # clear_cache() ran while this acquisition was in flight
            if not task.cancelled():
                task.exception()
            return
        self._in_flight = None
        if task.cancelled():
            return
        if task.exception() is None:
            self._cached = task.result()

    def _on_session_event(self, event: SessionEvent) -> None:
        cached = self._cached
        if cached is None or event.event_type != SESSION_REMOVED:
            return
        if any(session.id == cached.id for session in event.sessions):
            logger.debug("Cached session %s was removed", cached.id)
            self._cached = None
