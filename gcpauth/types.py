"""Data types shared by the gcpauth components."""

from __future__ import annotations

import time

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal


SESSION_ADDED = "session-added"
SESSION_REMOVED = "session-removed"

SessionEventType = Literal["session-added", "session-removed"]


@dataclass(frozen=True)
class Account:
    """The identity a session belongs to.

    Attributes
    ----------
    label : str
        Short label shown in account pickers (the email address).
    display_name : str
        Human-readable name.
    id : str
        Provider account identifier.
    """

    label: str
    display_name: str
    id: str


@dataclass(frozen=True)
class SessionRecord:
    """A persisted, authenticated session.

    Records are immutable and compared by value. Tokens are kept out
    of ``repr`` so records can be logged.

    Attributes
    ----------
    id : str
        Opaque random identifier, unique within the store.
    account : Account
        Identity the session belongs to.
    scopes : tuple[str, ...]
        Granted scopes, duplicate-free, in provider order.
    access_token : str
        Bearer token.
    refresh_token : str or None
        Refresh token, when the provider issued one.
    expires_at : float or None
        Absolute expiry as epoch seconds; ``None`` never expires.
    created_at : float
        Creation time as epoch seconds.
    """

    id: str
    account: Account
    scopes: tuple[str, ...]
    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: float | None = None
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        scopes = tuple(dict.fromkeys(self.scopes))
        if not scopes:
            msg = "A session must carry at least one scope"
            raise ValueError(msg)
        object.__setattr__(self, "scopes", scopes)

    def is_expired(self, now: float | None = None) -> bool:
        """Whether the session has reached its expiry time."""
        if self.expires_at is None:
            return False
        return self.expires_at <= (time.time() if now is None else now)

    def has_scopes(self, scopes: Any) -> bool:
        """Whether the session's scopes are a superset of ``scopes``."""
        return set(scopes) <= set(self.scopes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted camelCase shape."""
        data: dict[str, Any] = {
            "id": self.id,
            "account": {
                "label": self.account.label,
                "displayName": self.account.display_name,
                "id": self.account.id,
            },
            "scopes": list(self.scopes),
            "accessToken": self.access_token,
            "createdAt": self.created_at,
        }
        if self.refresh_token is not None:
            data["refreshToken"] = self.refresh_token
        if self.expires_at is not None:
            data["expiresAt"] = self.expires_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        """Deserialize from the persisted shape.

        Raises
        ------
        KeyError, TypeError, ValueError
            When a required field is missing or malformed.
        """
        account = data["account"]
        expires_at = data.get("expiresAt")
        return cls(
            id=str(data["id"]),
            account=Account(
                label=str(account["label"]),
                display_name=str(account.get("displayName", account["label"])),
                id=str(account["id"]),
            ),
            scopes=tuple(str(s) for s in data["scopes"]),
            access_token=str(data["accessToken"]),
            refresh_token=data.get("refreshToken"),
            expires_at=float(expires_at) if expires_at is not None else None,
            # Records written before createdAt existed count as old
            created_at=float(data.get("createdAt", 0.0)),
        )


@dataclass
class OAuthTokenSet:
    """Token response from the token endpoint.

    Attributes
    ----------
    access_token : str
        The access token for API calls.
    token_type : str
        Token type (usually "Bearer").
    refresh_token : str or None
        Refresh token, if issued.
    expires_in : int or None
        Lifetime of the access token in seconds.
    id_token : str or None
        OpenID Connect ID token, if issued.
    scope : str
        Space-separated granted scopes.
    raw : dict
        Complete raw token response.
    issued_at : float
        Timestamp when the tokens were issued.
    """

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_in: int | None = None
    id_token: str | None = None
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    issued_at: float = field(default_factory=time.time)

    @property
    def granted_scopes(self) -> list[str]:
        """Scopes the provider actually granted."""
        return self.scope.split()

    @property
    def expires_at(self) -> float | None:
        """Absolute expiry timestamp, or None."""
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> OAuthTokenSet:
        """Build from a decoded token endpoint response."""
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            refresh_token=data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            id_token=data.get("id_token"),
            scope=data.get("scope", ""),
            raw=data,
        )


@dataclass(frozen=True)
class UserInfo:
    """Identity returned by the userinfo endpoint."""

    id: str
    email: str
    verified_email: bool = False
    name: str = ""
    given_name: str = ""
    family_name: str = ""
    picture: str = ""
    locale: str = ""

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> UserInfo:
        return cls(
            id=str(data.get("id", "")),
            email=data.get("email", ""),
            verified_email=bool(data.get("verified_email", False)),
            name=data.get("name", ""),
            given_name=data.get("given_name", ""),
            family_name=data.get("family_name", ""),
            picture=data.get("picture", ""),
            locale=data.get("locale", ""),
        )

    @classmethod
    def placeholder(cls) -> UserInfo:
        """Sentinel identity used when the userinfo call fails."""
        return cls(
            id="unknown",
            email="authenticated@google.com",
            verified_email=True,
            name="Google Cloud User",
            given_name="Google",
            family_name="Cloud",
            picture="",
            locale="en",
        )

    def as_cloud_user(self) -> UserInfo:
        """Relabel a placeholder after a successful Cloud API probe."""
        return replace(self, email="gcp-user@google.com", name="Google Cloud Platform User")

    def to_account(self) -> Account:
        return Account(label=self.email, display_name=self.name or self.email, id=self.id)


@dataclass(frozen=True)
class SessionEvent:
    """Change notification delivered to session listeners.

    Attributes
    ----------
    event_type : str
        ``"session-added"`` or ``"session-removed"``.
    sessions : tuple[SessionRecord, ...]
        The records that were added or removed.
    """

    event_type: SessionEventType
    sessions: tuple[SessionRecord, ...]


@dataclass(frozen=True)
class Project:
    """The active Google Cloud project."""

    project_id: str
    region: str = "us-central1"


class FlowState(str, Enum):
    """States of an authorization flow run."""

    IDLE = "idle"
    LISTENER_STARTING = "listener_starting"
    AWAITING_REDIRECT = "awaiting_redirect"
    CODE_RECEIVED = "code_received"
    EXCHANGING = "exchanging"
    FETCHING_IDENTITY = "fetching_identity"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    PROVIDER_ERROR = "provider_error"
    EXCHANGE_FAILED = "exchange_failed"
    FAILED = "failed"
