"""Persistence of the session list on top of a SecretStore.

Reads never raise: a missing, unreadable, or corrupt blob yields an
empty list. Expired records are pruned on every read and the pruned
list is written back straight away. Writes are best effort.
"""

from __future__ import annotations

import json
import logging
import time

from typing import TYPE_CHECKING, Any

from .exceptions import PersistenceError
from .types import SessionRecord


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .secret_store import SecretStore


logger = logging.getLogger("gcpauth.store")

DEFAULT_KEY = "google-cloud-auth"


def serialize_sessions(records: Iterable[SessionRecord]) -> str:
    """Serialize records to the persisted JSON list."""
    return json.dumps([record.to_dict() for record in records])


def deserialize_sessions(blob: str) -> list[SessionRecord]:
    """Parse a persisted JSON list.

    Raises
    ------
    ValueError
        If the blob is not a list of well-formed records.
    """
    data: Any = json.loads(blob)
    if not isinstance(data, list):
        msg = "Persisted sessions are not a JSON list"
        raise ValueError(msg)
    try:
        return [SessionRecord.from_dict(item) for item in data]
    except (KeyError, TypeError, AttributeError) as exc:
        msg = f"Malformed session record: {exc}"
        raise ValueError(msg) from exc


class SessionStore:
    """Session list persisted as a single entry of a SecretStore.

    Parameters
    ----------
    secret_store : SecretStore
        Backend holding the serialized list.
    key : str
        Entry name (default ``"google-cloud-auth"``).
    clock : callable
        Returns the current epoch time; injectable for tests.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        key: str = DEFAULT_KEY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret_store = secret_store
        self._key = key
        self._clock = clock

    @property
    def key(self) -> str:
        return self._key

    @property
    def secret_store(self) -> SecretStore:
        return self._secret_store

    async def read(self) -> list[SessionRecord]:
        """Load the non-expired sessions.

        Returns
        -------
        list[SessionRecord]
            Valid sessions in stored order; empty on any failure.
        """
        try:
            blob = await self._secret_store.get(self._key)
        except PersistenceError as exc:
            logger.warning("Could not read stored sessions: %s", exc)
            return []

        if not blob:
            return []

        try:
            records = deserialize_sessions(blob)
        except ValueError as exc:
            logger.warning("Ignoring corrupt session data: %s", exc)
            return []

        now = self._clock()
        valid = [record for record in records if not record.is_expired(now)]
        if len(valid) != len(records):
            logger.debug("Pruning %d expired session(s)", len(records) - len(valid))
            await self.write(valid)
        return valid

    async def write(self, records: Iterable[SessionRecord]) -> bool:
        """Persist ``records`` in one call.

        Returns
        -------
        bool
            False when the backend rejected the write (logged, not raised).
        """
        try:
            await self._secret_store.set(self._key, serialize_sessions(records))
        except PersistenceError as exc:
            logger.error("Failed to persist sessions: %s", exc)
            return False
        return True

    async def clear(self) -> bool:
        """Delete the persisted list."""
        try:
            await self._secret_store.delete(self._key)
        except PersistenceError as exc:
            logger.error("Failed to clear stored sessions: %s", exc)
            return False
        return True
