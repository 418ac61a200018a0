"""gcpauth exception hierarchy.

All gcpauth-specific exceptions inherit from GcpAuthException, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .types import SessionRecord


class GcpAuthException(Exception):
    """Base exception for all gcpauth errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize gcpauth exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, flow_id, status, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if v is not None)
            if ctx:
                return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(GcpAuthException):
    """Settings are missing or inconsistent (e.g. no OAuth client id)."""


class PersistenceError(GcpAuthException):
    """The secret store could not be read or written.

    Raised by SecretStore backends. The session store absorbs it and
    degrades to an empty or unsaved session list.
    """

    def __init__(self, message: str, backend: str | None = None, **context: Any) -> None:
        super().__init__(message, backend=backend, **context)
        self.backend = backend


class AuthenticationError(GcpAuthException):
    """Authentication flow failed.

    Base class for every error raised while obtaining a session.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The OAuth provider name.
        flow_id : str, optional
            The identifier of the flow run that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class NetworkError(AuthenticationError):
    """The callback port could not be bound or an HTTP call never completed."""


class ProtocolError(AuthenticationError):
    """The identity provider redirected back with an ``error`` parameter."""

    def __init__(self, message: str, error: str | None = None, **context: Any) -> None:
        super().__init__(message, error=error, **context)
        self.error = error


class AuthFlowCancelled(AuthenticationError):
    """The caller cancelled the flow before a session was persisted."""


class AuthFlowTimeout(AuthenticationError, TimeoutError):
    """Authentication flow timed out.

    Raised either when no redirect arrives within the code-wait ceiling
    (``stage="code"``) or when the whole run exceeds the flow ceiling
    (``stage="flow"``).
    """

    def __init__(
        self,
        message: str,
        timeout: float | None = None,
        stage: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float, optional
            The timeout value in seconds.
        stage : str, optional
            Which clock expired: ``"code"`` or ``"flow"``.
        **context : Any
            Additional context (provider, flow_id).
        """
        super().__init__(message, timeout=timeout, stage=stage, **context)
        self.timeout = timeout
        self.stage = stage


class ExchangeFailed(AuthenticationError):
    """The token endpoint answered with a non-success response."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, status=status, **context)
        self.status = status
        self.body = body


class IdentityFetchDegraded(AuthenticationError):
    """The identity endpoint failed; the flow continues with a placeholder."""


class ListenerStopped(AuthenticationError):
    """The callback listener was stopped while a redirect was still awaited."""


class CompletedOutOfBand(AuthenticationError):
    """A matching session appeared in the store while the flow was waiting.

    Carries the discovered record so the caller can use it directly.
    """

    def __init__(self, message: str, session: SessionRecord | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.session = session
