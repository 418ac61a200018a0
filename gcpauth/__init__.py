"""Google Cloud OAuth2 session manager.

Runs the Authorization Code flow with PKCE through a local redirect
listener, persists sessions in the OS keyring (or an encrypted file),
and hands them to collaborators through a single-flight cache.
"""

from __future__ import annotations

from .cache import SessionCache
from .callback_server import CallbackListener, PendingExchange
from .config import GOOGLE_CLOUD_SCOPES, GcpAuthSettings, clear_settings, get_settings
from .context import AuthContext
from .events import SessionEventEmitter
from .exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    CompletedOutOfBand,
    ConfigurationError,
    ExchangeFailed,
    GcpAuthException,
    IdentityFetchDegraded,
    ListenerStopped,
    NetworkError,
    PersistenceError,
    ProtocolError,
)
from .flow import AuthorizationFlow
from .pkce import PKCEChallenge, derive_challenge, generate_verifier
from .provider import GoogleCloudProvider
from .registry import SessionRegistry
from .secret_store import (
    EncryptedFileSecretStore,
    KeyringSecretStore,
    MemorySecretStore,
    SecretStore,
    create_secret_store,
)
from .session_store import SessionStore
from .types import (
    SESSION_ADDED,
    SESSION_REMOVED,
    Account,
    FlowState,
    Project,
    SessionEvent,
    SessionRecord,
    UserInfo,
)


__version__ = "0.1.0"

__all__ = [
    "GOOGLE_CLOUD_SCOPES",
    "SESSION_ADDED",
    "SESSION_REMOVED",
    "Account",
    "AuthContext",
    "AuthFlowCancelled",
    "AuthFlowTimeout",
    "AuthenticationError",
    "AuthorizationFlow",
    "CallbackListener",
    "CompletedOutOfBand",
    "ConfigurationError",
    "EncryptedFileSecretStore",
    "ExchangeFailed",
    "FlowState",
    "GcpAuthException",
    "GcpAuthSettings",
    "GoogleCloudProvider",
    "IdentityFetchDegraded",
    "KeyringSecretStore",
    "ListenerStopped",
    "MemorySecretStore",
    "NetworkError",
    "PKCEChallenge",
    "PendingExchange",
    "PersistenceError",
    "Project",
    "ProtocolError",
    "SecretStore",
    "SessionCache",
    "SessionEvent",
    "SessionEventEmitter",
    "SessionRecord",
    "SessionRegistry",
    "SessionStore",
    "UserInfo",
    "clear_settings",
    "create_secret_store",
    "derive_challenge",
    "generate_verifier",
    "get_settings",
]
