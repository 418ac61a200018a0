"""PKCE (Proof Key for Code Exchange) helpers.

Implements RFC 7636 with the S256 method: the verifier is 32 random
bytes in unpadded base64url (43 characters) and the challenge is the
unpadded base64url SHA-256 digest of the verifier.
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass

from .exceptions import AuthenticationError


VERIFIER_BYTES = 32
NONCE_BYTES = 16


def _b64url(data: bytes) -> str:
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _random_bytes(num_bytes: int) -> bytes:
    try:
        return secrets.token_bytes(num_bytes)
    except (OSError, NotImplementedError) as exc:
        msg = "Secure random source unavailable"
        raise AuthenticationError(msg, reason=str(exc)) from exc


def generate_verifier() -> str:
    """Generate a fresh code verifier.

    Returns
    -------
    str
        43 characters of unpadded base64url.

    Raises
    ------
    AuthenticationError
        If the operating system cannot supply random bytes.
    """
    return _b64url(_random_bytes(VERIFIER_BYTES))


def derive_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for ``verifier``.

    Parameters
    ----------
    verifier : str
        The code verifier.

    Returns
    -------
    str
        Unpadded base64url SHA-256 digest of the verifier.
    """
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_nonce() -> str:
    """Generate the ``state`` value that ties a redirect to its flow run."""
    return _random_bytes(NONCE_BYTES).hex()


@dataclass(frozen=True)
class PKCEChallenge:
    """A PKCE code verifier and its derived challenge.

    Attributes
    ----------
    verifier : str
        The high-entropy code verifier, kept client-side.
    challenge : str
        The S256 challenge sent with the authorization request.
    method : str
        Always ``"S256"``.
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls) -> PKCEChallenge:
        """Generate a new verifier/challenge pair."""
        return cls.from_verifier(generate_verifier())

    @classmethod
    def from_verifier(cls, verifier: str) -> PKCEChallenge:
        """Build the pair for an existing verifier."""
        return cls(verifier=verifier, challenge=derive_challenge(verifier))
