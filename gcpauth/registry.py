"""In-memory view of the persisted sessions with change events."""

from __future__ import annotations

import asyncio
import logging

from typing import TYPE_CHECKING

from .events import SessionEventEmitter
from .types import SESSION_ADDED, SESSION_REMOVED, SessionRecord


if TYPE_CHECKING:
    from collections.abc import Collection, Iterable

    from .session_store import SessionStore


logger = logging.getLogger("gcpauth.auth")


class SessionRegistry:
    """Queries and mutations over the session list.

    Every mutation is persisted before the matching event is emitted.
    ``check_for_updates`` reconciles against changes made by other
    processes sharing the same store.

    Parameters
    ----------
    store : SessionStore
        Persistence for the session list.
    events : SessionEventEmitter, optional
        Event hub; a new one is created when omitted.
    """

    def __init__(self, store: SessionStore, events: SessionEventEmitter | None = None) -> None:
        self._store = store
        self._events = events or SessionEventEmitter()
        self._known: list[SessionRecord] = []
        self._lock = asyncio.Lock()

    @property
    def events(self) -> SessionEventEmitter:
        return self._events

    @property
    def store(self) -> SessionStore:
        return self._store

    async def initialize(self) -> list[SessionRecord]:
        """Seed the last-known list used by ``check_for_updates``."""
        async with self._lock:
            self._known = await self._store.read()
            return list(self._known)

    async def get_sessions(self, scopes: Iterable[str] | None = None) -> list[SessionRecord]:
        """Return valid sessions, optionally only those covering ``scopes``.

        Parameters
        ----------
        scopes : iterable of str, optional
            Required scopes; a session matches when its scopes are a
            superset.

        Returns
        -------
        list[SessionRecord]
            Matching sessions in stored order.
        """
        # Prune write-back must not interleave with a mutation.
        async with self._lock:
            sessions = await self._store.read()
        if scopes is None:
            return sessions
        required = set(scopes)
        return [session for session in sessions if session.has_scopes(required)]

    async def find_recent(
        self,
        scopes: Iterable[str],
        since: float,
        exclude_ids: Collection[str] = (),
    ) -> SessionRecord | None:
        """Find a session created at or after ``since`` that covers ``scopes``.

        Used to notice a sign-in completed by another process while a
        flow is still waiting on its own redirect.
        """
        for session in await self.get_sessions(scopes):
            if session.id not in exclude_ids and session.created_at >= since:
                return session
        return None

    async def add_session(self, record: SessionRecord) -> SessionRecord:
        """Append ``record``, persist, then emit ``session-added``."""
        async with self._lock:
            sessions = [s for s in await self._store.read() if s.id != record.id]
            sessions.append(record)
            if not await self._store.write(sessions):
                logger.warning("Session %s is only available in memory", record.id)
            self._known = sessions
        self._events.emit(SESSION_ADDED, [record])
        return record

    async def remove_session(self, session_id: str) -> SessionRecord | None:
        """Remove a session by id.

        Returns
        -------
        SessionRecord or None
            The removed record, or None when the id is unknown (no write,
            no event).
        """
        async with self._lock:
            sessions = await self._store.read()
            removed = next((s for s in sessions if s.id == session_id), None)
            if removed is None:
                logger.debug("remove_session: unknown session id %s", session_id)
                return None
            remaining = [s for s in sessions if s.id != session_id]
            await self._store.write(remaining)
            self._known = remaining
        self._events.emit(SESSION_REMOVED, [removed])
        return removed

    async def remove_sessions(self, session_ids: Iterable[str]) -> list[SessionRecord]:
        """Remove several sessions with a single write and a single event."""
        ids = set(session_ids)
        async with self._lock:
            sessions = await self._store.read()
            removed = [s for s in sessions if s.id in ids]
            if not removed:
                return []
            remaining = [s for s in sessions if s.id not in ids]
            await self._store.write(remaining)
            self._known = remaining
        self._events.emit(SESSION_REMOVED, removed)
        return removed

    async def check_for_updates(self) -> tuple[list[SessionRecord], list[SessionRecord]]:
        """Reconcile with the store and emit events for the differences.

        Returns
        -------
        tuple[list[SessionRecord], list[SessionRecord]]
            ``(added, removed)`` relative to the last-known list.
        """
        async with self._lock:
            current = await self._store.read()
            previous = self._known
            added = [s for s in current if s not in previous]
            removed = [s for s in previous if s not in current]
            self._known = current

        if added:
            self._events.emit(SESSION_ADDED, added)
        if removed:
            self._events.emit(SESSION_REMOVED, removed)
        return added, removed
