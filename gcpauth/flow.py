"""OAuth2 authorization code flow orchestrator.

Provides AuthorizationFlow, which runs one browser sign-in from PKCE
generation to a persisted SessionRecord. The redirect wait races three
things: the listener's PendingExchange, caller cancellation, and a
periodic check of the session store for a sign-in completed by another
process. The whole run sits under its own ceiling.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import asyncio
import logging
import secrets
import time
import webbrowser

from typing import TYPE_CHECKING, Any

from .exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    CompletedOutOfBand,
    ConfigurationError,
    ExchangeFailed,
    IdentityFetchDegraded,
    ListenerStopped,
    ProtocolError,
)
from .pkce import PKCEChallenge, generate_nonce
from .types import FlowState, SessionRecord, UserInfo


if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Sequence

    from .callback_server import CallbackListener, PendingExchange
    from .provider import GoogleCloudProvider
    from .registry import SessionRegistry


logger = logging.getLogger("gcpauth.auth")


class AuthorizationFlow:
    """Runs the browser-based sign-in.

    Parameters
    ----------
    provider : GoogleCloudProvider
        Identity provider client.
    listener : CallbackListener
        Local redirect listener.
    registry : SessionRegistry
        Where the new session is persisted.
    callback_port : int
        Preferred listener port (default ``3000``).
    flow_timeout : float
        Ceiling for the whole run, in seconds (default ``180``).
    code_timeout : float
        Ceiling for the browser redirect, in seconds (default ``120``).
    poll_interval : float
        Interval of the out-of-band store check, in seconds (default ``5``).
    open_browser : callable, optional
        Opens the authorization URL. Defaults to ``webbrowser.open``.
    """

    def __init__(
        self,
        provider: GoogleCloudProvider,
        listener: CallbackListener,
        registry: SessionRegistry,
        callback_port: int = 3000,
        flow_timeout: float = 180.0,
        code_timeout: float = 120.0,
        poll_interval: float = 5.0,
        open_browser: Callable[[str], Any] | None = None,
    ) -> None:
        self.provider = provider
        self.listener = listener
        self.registry = registry
        self.callback_port = callback_port
        self.flow_timeout = flow_timeout
        self.code_timeout = code_timeout
        self.poll_interval = poll_interval
        self._open_browser = open_browser or webbrowser.open

        self._state = FlowState.IDLE
        self._outcome: FlowState | None = None
        self._flow_id: str | None = None
        self._cancel_event = asyncio.Event()

    @property
    def state(self) -> FlowState:
        """Current state; ``IDLE`` whenever no run is active."""
        return self._state

    @property
    def outcome(self) -> FlowState | None:
        """Terminal state of the most recent run."""
        return self._outcome

    @property
    def flow_id(self) -> str | None:
        return self._flow_id

    def cancel(self) -> None:
        """Cancel the active run before it persists a session."""
        self._cancel_event.set()

    async def request_session(
        self,
        scopes: Sequence[str],
        cancel_event: asyncio.Event | None = None,
    ) -> SessionRecord:
        """Run a sign-in and return the persisted session.

        Parameters
        ----------
        scopes : sequence of str
            Scopes to request.
        cancel_event : asyncio.Event, optional
            Setting it cancels the run before persistence.

        Returns
        -------
        SessionRecord
            The new session, already persisted.

        Raises
        ------
        AuthFlowTimeout
            If the redirect or the whole run exceeds its ceiling.
        AuthFlowCancelled
            If cancellation was requested.
        CompletedOutOfBand
            If a matching session appeared in the store meanwhile.
        ProtocolError
            If the provider redirected back with an error.
        ExchangeFailed
            If the token endpoint rejected the code.
        NetworkError
            If the listener or an HTTP call failed.
        """
        if not scopes:
            msg = "At least one scope must be requested"
            raise ValueError(msg)

        self._flow_id = secrets.token_urlsafe(8)
        self._cancel_event = asyncio.Event()
        try:
            return await asyncio.wait_for(
                self._run(list(scopes), cancel_event), timeout=self.flow_timeout
            )
        except AuthFlowTimeout:
            raise
        except asyncio.TimeoutError as exc:
            self._outcome = FlowState.TIMED_OUT
            msg = f"Sign-in did not complete within {self.flow_timeout}s"
            raise AuthFlowTimeout(
                msg,
                timeout=self.flow_timeout,
                stage="flow",
                provider=self.provider.name,
                flow_id=self._flow_id,
            ) from exc

    async def _run(  # noqa: C901
        self, scopes: list[str], cancel_event: asyncio.Event | None
    ) -> SessionRecord:
        flow_id = self._flow_id
        started_at = time.time()
        known_ids = {session.id for session in await self.registry.get_sessions()}
        pending: PendingExchange | None = None

        try:
            self.provider.require_client_id()
            nonce = generate_nonce()
            pkce = PKCEChallenge.generate()

            self._set_state(FlowState.LISTENER_STARTING)
            redirect_uri = self.listener.start(self.callback_port)
            pending = self.listener.expect(nonce)

            authorize_url = self.provider.build_authorize_url(
                redirect_uri=redirect_uri, state=nonce, pkce=pkce, scopes=scopes
            )
            self._set_state(FlowState.AWAITING_REDIRECT)
            self._launch_browser(authorize_url)

            code = await self._await_code(pending, scopes, started_at, known_ids, cancel_event)
            self._set_state(FlowState.CODE_RECEIVED)
            self._check_cancelled(cancel_event)

            self._set_state(FlowState.EXCHANGING)
            tokens = await self.provider.exchange_code(code, redirect_uri, pkce.verifier)
            self._check_cancelled(cancel_event)

            self._set_state(FlowState.FETCHING_IDENTITY)
            user = await self._fetch_identity(tokens.access_token)
            self._check_cancelled(cancel_event)

            record = SessionRecord(
                id=secrets.token_hex(16),
                account=user.to_account(),
                scopes=tuple(tokens.granted_scopes or scopes),
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=tokens.expires_at,
                created_at=time.time(),
            )

            self._set_state(FlowState.PERSISTING)
            # Once persistence starts the session stands
            await asyncio.shield(self.registry.add_session(record))

            self._outcome = FlowState.COMPLETE
            logger.info("Auth flow %s completed for %s", flow_id, record.account.label)
            return record

        except CompletedOutOfBand:
            self._outcome = FlowState.COMPLETE
            raise
        except AuthFlowTimeout:
            self._outcome = FlowState.TIMED_OUT
            raise
        except (AuthFlowCancelled, ListenerStopped):
            self._outcome = FlowState.CANCELLED
            raise
        except ProtocolError:
            self._outcome = FlowState.PROVIDER_ERROR
            raise
        except ExchangeFailed:
            self._outcome = FlowState.EXCHANGE_FAILED
            raise
        except asyncio.CancelledError:
            self._outcome = FlowState.CANCELLED
            raise
        except (AuthenticationError, ConfigurationError):
            self._outcome = FlowState.FAILED
            raise
        except Exception as exc:
            self._outcome = FlowState.FAILED
            msg = f"Authentication flow failed: {exc}"
            raise AuthenticationError(msg, provider=self.provider.name, flow_id=flow_id) from exc
        finally:
            if pending is not None:
                self.listener.discard(pending)
            await self.listener.stop()
            self._state = FlowState.IDLE

    async def _await_code(
        self,
        pending: PendingExchange,
        scopes: list[str],
        started_at: float,
        known_ids: Collection[str],
        cancel_event: asyncio.Event | None,
    ) -> str:
        cancel_tasks = [asyncio.ensure_future(self._cancel_event.wait())]
        if cancel_event is not None:
            cancel_tasks.append(asyncio.ensure_future(cancel_event.wait()))
        poll_task = asyncio.ensure_future(self._poll_for_session(scopes, started_at, known_ids))
        helpers = [*cancel_tasks, poll_task]

        try:
            done, _ = await asyncio.wait(
                [pending.future, *helpers],
                timeout=self.code_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in helpers:
                task.cancel()

        if pending.future in done:
            return pending.future.result()

        if any(task in done for task in cancel_tasks):
            msg = "Authentication flow was cancelled"
            raise AuthFlowCancelled(msg, provider=self.provider.name, flow_id=self._flow_id)

        if poll_task in done:
            session = poll_task.result()
            logger.info("Auth flow %s: session %s completed elsewhere", self._flow_id, session.id)
            msg = "A matching session was created outside this flow"
            raise CompletedOutOfBand(
                msg, session=session, provider=self.provider.name, flow_id=self._flow_id
            )

        msg = f"No authorization redirect within {self.code_timeout}s"
        raise AuthFlowTimeout(
            msg,
            timeout=self.code_timeout,
            stage="code",
            provider=self.provider.name,
            flow_id=self._flow_id,
        )

    async def _poll_for_session(
        self, scopes: list[str], started_at: float, known_ids: Collection[str]
    ) -> SessionRecord:
        while True:
            await asyncio.sleep(self.poll_interval)
            session = await self.registry.find_recent(scopes, since=started_at, exclude_ids=known_ids)
            if session is not None:
                return session

    async def _fetch_identity(self, access_token: str) -> UserInfo:
        try:
            return await self.provider.get_userinfo(access_token)
        except IdentityFetchDegraded as exc:
            logger.warning("Failed to fetch user info, using a placeholder identity: %s", exc)

        user = UserInfo.placeholder()
        if await self.provider.probe_cloud_access(access_token):
            user = user.as_cloud_user()
        return user

    def _launch_browser(self, url: str) -> None:
        logger.info("Open this URL to authenticate: %s", url)
        try:
            opened = self._open_browser(url)
        except Exception as exc:
            logger.warning("Could not open a browser: %s", exc)
            return
        if opened is False:
            logger.warning("No browser could be opened; navigate to the URL above manually")

    def _check_cancelled(self, cancel_event: asyncio.Event | None) -> None:
        if self._cancel_event.is_set() or (cancel_event is not None and cancel_event.is_set()):
            msg = "Authentication flow was cancelled"
            raise AuthFlowCancelled(msg, provider=self.provider.name, flow_id=self._flow_id)

    def _set_state(self, state: FlowState) -> None:
        logger.debug("Auth flow %s: %s -> %s", self._flow_id, self._state.value, state.value)
        self._state = state
