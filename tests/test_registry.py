"""Unit tests for SessionRegistry and the session event hub."""

from __future__ import annotations

import asyncio

import pytest

from gcpauth.events import SessionEventEmitter
from gcpauth.registry import SessionRegistry
from gcpauth.secret_store import MemorySecretStore
from gcpauth.session_store import SessionStore, deserialize_sessions, serialize_sessions
from gcpauth.types import SESSION_ADDED, SESSION_REMOVED, SessionEvent


# ── Queries ─────────────────────────────────────────────────────────


class TestQueries:
    """Tests for get_sessions and find_recent."""

    @pytest.mark.asyncio
    async def test_scope_filter_is_superset(
        self, registry: SessionRegistry, session_store: SessionStore, make_record
    ) -> None:
        """Only sessions covering every requested scope match."""
        wide = make_record(scopes=["openid", "email", "cloud"])
        narrow = make_record(scopes=["openid"])
        await session_store.write([wide, narrow])

        assert await registry.get_sessions() == [wide, narrow]
        assert await registry.get_sessions(["openid"]) == [wide, narrow]
        assert await registry.get_sessions(["openid", "cloud"]) == [wide]
        assert await registry.get_sessions(["drive"]) == []

    @pytest.mark.asyncio
    async def test_find_recent(
        self, registry: SessionRegistry, session_store: SessionStore, make_record
    ) -> None:
        """find_recent ignores older and excluded sessions."""
        old = make_record(created_at=100.0)
        excluded = make_record(created_at=500.0)
        fresh = make_record(created_at=600.0)
        await session_store.write([old, excluded, fresh])

        found = await registry.find_recent(["openid"], since=200.0, exclude_ids={excluded.id})
        assert found == fresh
        assert await registry.find_recent(["openid"], since=700.0) is None


# ── Mutations ───────────────────────────────────────────────────────


class TestMutations:
    """Tests for add_session / remove_session."""

    @pytest.mark.asyncio
    async def test_add_persists_before_emitting(self, make_record) -> None:
        """The store write happens before listeners are notified."""
        calls: list[str] = []

        class RecordingStore(MemorySecretStore):
            async def set(self, key: str, value: str) -> None:
                calls.append("write")
                await super().set(key, value)

        registry = SessionRegistry(SessionStore(RecordingStore()))
        events: list[SessionEvent] = []

        def listener(event: SessionEvent) -> None:
            calls.append("event")
            events.append(event)

        registry.events.subscribe(listener)
        record = make_record()
        await registry.add_session(record)

        assert calls == ["write", "event"]
        assert events[0].event_type == SESSION_ADDED
        assert events[0].sessions == (record,)

    @pytest.mark.asyncio
    async def test_pruning_read_does_not_erase_concurrent_add(self, make_record) -> None:
        """A read that prunes while a session is added keeps the new session."""

        class StaleReadStore(MemorySecretStore):
            """Returns the first read's value only after a delay."""

            def __init__(self) -> None:
                super().__init__()
                self.reads = 0

            async def get(self, key: str) -> str | None:
                value = await super().get(key)
                self.reads += 1
                if self.reads == 1:
                    await asyncio.sleep(0.05)
                return value

        ticks = iter([100.0, 300.0])
        secret_store = StaleReadStore()
        store = SessionStore(secret_store, clock=lambda: next(ticks, 300.0))
        old = make_record(record_id="old", expires_at=200.0)
        await secret_store.set(store.key, serialize_sessions([old]))
        registry = SessionRegistry(store)

        await asyncio.gather(
            registry.get_sessions(), registry.add_session(make_record(record_id="new"))
        )

        persisted = deserialize_sessions(await secret_store.get(store.key) or "[]")
        assert [record.id for record in persisted] == ["new"]

    @pytest.mark.asyncio
    async def test_add_replaces_same_id(
        self, registry: SessionRegistry, make_record
    ) -> None:
        """Adding a record whose id already exists replaces it."""
        first = make_record(record_id="same")
        second = make_record(record_id="same", email="other@example.com")
        await registry.add_session(first)
        await registry.add_session(second)
        assert await registry.get_sessions() == [second]

    @pytest.mark.asyncio
    async def test_remove_emits_removed(self, registry: SessionRegistry, make_record) -> None:
        """Removing a known id persists and emits session-removed."""
        keep, drop = make_record(), make_record()
        await registry.add_session(keep)
        await registry.add_session(drop)
        events: list[SessionEvent] = []
        registry.events.subscribe(events.append)

        assert await registry.remove_session(drop.id) == drop
        assert await registry.get_sessions() == [keep]
        assert [e.event_type for e in events] == [SESSION_REMOVED]
        assert events[0].sessions == (drop,)

    @pytest.mark.asyncio
    async def test_remove_unknown_is_silent(
        self, registry: SessionRegistry, secret_store, make_record
    ) -> None:
        """An unknown id causes no write and no event."""
        await registry.add_session(make_record())
        before = await secret_store.get("google-cloud-auth")
        events: list[SessionEvent] = []
        registry.events.subscribe(events.append)

        assert await registry.remove_session("nope") is None
        assert events == []
        assert await secret_store.get("google-cloud-auth") == before

    @pytest.mark.asyncio
    async def test_remove_sessions_batches(self, registry: SessionRegistry, make_record) -> None:
        """Several removals produce a single event."""
        records = [make_record() for _ in range(3)]
        for record in records:
            await registry.add_session(record)
        events: list[SessionEvent] = []
        registry.events.subscribe(events.append)

        removed = await registry.remove_sessions([r.id for r in records[:2]] + ["unknown"])
        assert removed == records[:2]
        assert len(events) == 1
        assert events[0].sessions == tuple(records[:2])
        assert await registry.remove_sessions(["unknown"]) == []
        assert len(events) == 1


# ── Reconciliation ──────────────────────────────────────────────────


class TestCheckForUpdates:
    """Tests for check_for_updates against external writers."""

    @pytest.mark.asyncio
    async def test_detects_added_and_removed(
        self, registry: SessionRegistry, secret_store, make_record
    ) -> None:
        """Changes written by another store instance emit both kinds of events."""
        stays, goes = make_record(), make_record()
        other = SessionStore(secret_store)
        await other.write([stays, goes])
        await registry.initialize()

        events: list[SessionEvent] = []
        registry.events.subscribe(events.append)
        arrives = make_record()
        await other.write([stays, arrives])

        added, removed = await registry.check_for_updates()
        assert added == [arrives]
        assert removed == [goes]
        assert [(e.event_type, e.sessions) for e in events] == [
            (SESSION_ADDED, (arrives,)),
            (SESSION_REMOVED, (goes,)),
        ]

    @pytest.mark.asyncio
    async def test_no_change_no_events(self, registry: SessionRegistry, make_record) -> None:
        """An unchanged store emits nothing."""
        await registry.add_session(make_record())
        events: list[SessionEvent] = []
        registry.events.subscribe(events.append)
        assert await registry.check_for_updates() == ([], [])
        assert events == []


# ── Event hub ───────────────────────────────────────────────────────


class TestEventEmitter:
    """Tests for SessionEventEmitter."""

    def test_failing_listener_is_isolated(self, make_record) -> None:
        """One raising listener does not stop delivery to the next."""
        emitter = SessionEventEmitter()
        received: list[SessionEvent] = []

        def broken(event: SessionEvent) -> None:
            raise RuntimeError("boom")

        emitter.subscribe(broken)
        emitter.subscribe(received.append)
        event = emitter.emit(SESSION_ADDED, [make_record()])
        assert received == [event]

    def test_unsubscribe(self, make_record) -> None:
        """Both the returned callable and unsubscribe() detach listeners."""
        emitter = SessionEventEmitter()
        received: list[SessionEvent] = []
        detach = emitter.subscribe(received.append)
        assert emitter.listener_count == 1
        detach()
        assert emitter.listener_count == 0
        assert emitter.unsubscribe(received.append) is False
        emitter.emit(SESSION_ADDED, [make_record()])
        assert received == []

    @pytest.mark.asyncio
    async def test_async_listener(self, make_record) -> None:
        """Coroutine listeners are scheduled on the running loop."""
        emitter = SessionEventEmitter()
        received = asyncio.Event()
        captured: list[SessionEvent] = []

        async def listener(event: SessionEvent) -> None:
            captured.append(event)
            received.set()

        emitter.subscribe(listener)
        event = emitter.emit(SESSION_REMOVED, [make_record()])
        await asyncio.wait_for(received.wait(), 2)
        assert captured == [event]

    @pytest.mark.asyncio
    async def test_failing_async_listener_is_isolated(self, make_record) -> None:
        """A raising coroutine listener is logged, not propagated."""
        emitter = SessionEventEmitter()
        done = asyncio.Event()

        async def broken(event: SessionEvent) -> None:
            done.set()
            raise RuntimeError("boom")

        emitter.subscribe(broken)
        emitter.emit(SESSION_ADDED, [make_record()])
        await asyncio.wait_for(done.wait(), 2)
        await asyncio.sleep(0)
