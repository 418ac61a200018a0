"""Explicit wiring of the gcpauth components.

An AuthContext is constructed once, from settings, and passed by
reference to every collaborator that needs credentials. Every
component can be injected, which is how tests swap in memory stores,
mock transports and fake browsers.
"""

# pylint: disable=too-many-instance-attributes

from __future__ import annotations

import asyncio
import logging

from typing import TYPE_CHECKING, Any

from . import log
from .cache import SessionCache
from .callback_server import CallbackListener
from .config import get_settings
from .flow import AuthorizationFlow
from .provider import GoogleCloudProvider
from .registry import SessionRegistry
from .secret_store import EncryptedFileSecretStore, create_secret_store
from .session_store import SessionStore
from .types import Project
from .watcher import StoreWatcher


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence
    from concurrent.futures import Future

    from .config import GcpAuthSettings
    from .events import SessionListener
    from .secret_store import SecretStore
    from .types import SessionRecord


logger = logging.getLogger("gcpauth.auth")


class AuthContext:
    """Session manager facade for one application.

    Parameters
    ----------
    settings : GcpAuthSettings, optional
        Configuration; defaults to ``get_settings()``.
    secret_store : SecretStore, optional
        Overrides the backend selected by ``settings.store.backend``.
    provider : GoogleCloudProvider, optional
        Overrides the provider built from ``settings.oauth``.
    listener : CallbackListener, optional
        Overrides the listener built from ``settings.callback``.
    open_browser : callable, optional
        Opens the authorization URL; defaults to ``webbrowser.open``.
    scopes : sequence of str, optional
        Scopes for ``get_session``; defaults to ``settings.oauth.scopes``.
    """

    def __init__(
        self,
        settings: GcpAuthSettings | None = None,
        *,
        secret_store: SecretStore | None = None,
        provider: GoogleCloudProvider | None = None,
        listener: CallbackListener | None = None,
        open_browser: Callable[[str], Any] | None = None,
        scopes: Sequence[str] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        log.configure(self.settings.log)

        self.secret_store = secret_store or create_secret_store(self.settings.store)
        self.session_store = SessionStore(self.secret_store, key=self.settings.store.key)
        self.registry = SessionRegistry(self.session_store)
        self.provider = provider or GoogleCloudProvider.from_settings(self.settings)

        callback = self.settings.callback
        timeout = self.settings.timeout
        self.listener = listener or CallbackListener(
            host=callback.host,
            redirect_host=callback.redirect_host,
            port_retry_limit=callback.port_retry_limit,
            shutdown_grace=timeout.shutdown_grace,
        )
        self.flow = AuthorizationFlow(
            self.provider,
            self.listener,
            self.registry,
            callback_port=callback.port,
            flow_timeout=timeout.flow,
            code_timeout=timeout.code_wait,
            poll_interval=timeout.poll_interval,
            open_browser=open_browser,
        )
        self.scopes = list(scopes or self.settings.oauth.scopes)
        self.cache = SessionCache(self.registry, self.flow, self.scopes)

        self._watcher: StoreWatcher | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False

    async def __aenter__(self) -> AuthContext:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def start(self) -> None:
        """Load the stored sessions and start watching the store."""
        if self._started:
            return
        self._loop = asyncio.get_running_loop()
        await self.registry.initialize()
        if isinstance(self.secret_store, EncryptedFileSecretStore) and self.settings.store.watch:
            self._watcher = StoreWatcher(self.secret_store.path, self._on_store_file_changed)
            self._watcher.start()
        self._started = True

    async def aclose(self) -> None:
        """Stop the watcher and listener and release HTTP resources."""
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        self.flow.cancel()
        await self.listener.stop()
        self.cache.close()
        await self.provider.aclose()
        self._started = False

    async def get_session(self) -> SessionRecord:
        """Return a session covering ``self.scopes``, signing in if needed."""
        return await self.cache.get_session()

    async def get_access_token(self) -> str:
        """Return the bearer token of the current session."""
        session = await self.get_session()
        return session.access_token

    async def is_authenticated(self) -> bool:
        """Whether a valid stored session covers ``self.scopes``. Never prompts."""
        cached = self.cache.cached_session
        if cached is not None and not cached.is_expired():
            return True
        return bool(await self.registry.get_sessions(self.scopes))

    async def get_sessions(self, scopes: Iterable[str] | None = None) -> list[SessionRecord]:
        return await self.registry.get_sessions(scopes)

    async def remove_session(self, session_id: str) -> SessionRecord | None:
        return await self.registry.remove_session(session_id)

    async def sign_out(self) -> list[SessionRecord]:
        """Remove every session holding the primary scope and clear the cache."""
        sessions = await self.registry.get_sessions(self.scopes[:1])
        removed = await self.registry.remove_sessions(s.id for s in sessions)
        self.cache.clear_cache()
        logger.info("Signed out of %d session(s)", len(removed))
        return removed

    async def clear_all_sessions(self) -> int:
        """Remove every stored session regardless of scopes."""
        sessions = await self.registry.get_sessions()
        removed = await self.registry.remove_sessions(s.id for s in sessions)
        self.cache.clear_cache()
        return len(removed)

    def cancel_sign_in(self) -> None:
        """Cancel a sign-in that is waiting for the browser."""
        self.flow.cancel()

    async def force_stop(self) -> None:
        """Cancel any sign-in and close the callback listener immediately."""
        self.flow.cancel()
        await self.listener.stop()
        self.cache.clear_cache()

    async def notify_store_changed(self) -> tuple[list[SessionRecord], list[SessionRecord]]:
        """Reconcile with a store that another process may have changed."""
        return await self.registry.check_for_updates()

    def current_project(self) -> Project | None:
        """The configured Google Cloud project, if any."""
        project = self.settings.project
        if not project.project_id:
            return None
        return Project(project_id=project.project_id, region=project.region)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to ``session-added`` / ``session-removed`` events."""
        return self.registry.events.subscribe(listener)

    def unsubscribe(self, listener: SessionListener) -> bool:
        return self.registry.events.unsubscribe(listener)

    def _on_store_file_changed(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        future = asyncio.run_coroutine_threadsafe(self.registry.check_for_updates(), loop)
        future.add_done_callback(_log_reconcile_failure)


def _log_reconcile_failure(future: Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Session store reconciliation failed: %s", exc)
