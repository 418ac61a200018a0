"""Google identity provider client.

Builds authorization URLs and talks to the token, userinfo and Cloud
Resource Manager endpoints over a shared ``httpx.AsyncClient``.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import json
import logging

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from .config import (
    CLOUD_RESOURCE_MANAGER_URL,
    GOOGLE_AUTHORIZE_URL,
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
)
from .exceptions import ConfigurationError, ExchangeFailed, IdentityFetchDegraded, NetworkError
from .log import redact_sensitive_data
from .types import OAuthTokenSet, UserInfo


if TYPE_CHECKING:
    from collections.abc import Iterable

    from .config import GcpAuthSettings
    from .pkce import PKCEChallenge


logger = logging.getLogger("gcpauth.auth")

PROVIDER_NAME = "google"


class GoogleCloudProvider:
    """OAuth2 client for Google accounts with Cloud scopes.

    Parameters
    ----------
    client_id : str
        The OAuth2 client ID.
    client_secret : str
        The OAuth2 client secret (installed-app clients still send one).
    authorize_url : str
        Authorization endpoint.
    token_url : str
        Token exchange endpoint.
    userinfo_url : str
        Identity endpoint.
    cloud_probe_url : str
        Endpoint probed when the identity call fails; empty disables it.
    http_timeout : float
        Timeout for the token exchange, in seconds.
    identity_timeout : float
        Timeout for the identity and probe calls, in seconds.
    http_client : httpx.AsyncClient, optional
        Client to use instead of creating one.
    """

    name = PROVIDER_NAME

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        authorize_url: str = GOOGLE_AUTHORIZE_URL,
        token_url: str = GOOGLE_TOKEN_URL,
        userinfo_url: str = GOOGLE_USERINFO_URL,
        cloud_probe_url: str = CLOUD_RESOURCE_MANAGER_URL,
        http_timeout: float = 30.0,
        identity_timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.cloud_probe_url = cloud_probe_url
        self.http_timeout = http_timeout
        self.identity_timeout = identity_timeout
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: GcpAuthSettings) -> GoogleCloudProvider:
        """Create a provider from the ``oauth`` and ``timeout`` sections."""
        oauth = settings.oauth
        return cls(
            client_id=oauth.client_id,
            client_secret=oauth.client_secret,
            authorize_url=oauth.authorize_url,
            token_url=oauth.token_url,
            userinfo_url=oauth.userinfo_url,
            cloud_probe_url=oauth.cloud_probe_url,
            http_timeout=settings.timeout.http,
            identity_timeout=settings.timeout.identity,
        )

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.http_timeout)
        return self._http_client

    async def aclose(self) -> None:
        """Close the shared HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    def require_client_id(self) -> str:
        """Return the client id or raise ConfigurationError when unset."""
        if not self.client_id:
            msg = "No OAuth client id configured; set GCPAUTH_OAUTH__CLIENT_ID"
            raise ConfigurationError(msg, provider=self.name)
        return self.client_id

    def build_authorize_url(
        self,
        redirect_uri: str,
        state: str,
        pkce: PKCEChallenge,
        scopes: Iterable[str],
    ) -> str:
        """Build the full authorization URL.

        Parameters
        ----------
        redirect_uri : str
            The listener's callback URL.
        state : str
            Nonce echoed back on the redirect.
        pkce : PKCEChallenge
            Challenge for this run.
        scopes : iterable of str
            Requested scopes.

        Returns
        -------
        str
            The authorization URL to open in the browser.

        Raises
        ------
        ConfigurationError
            If no client id is configured.
        """
        params: dict[str, str] = {
            "client_id": self.require_client_id(),
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str, verifier: str) -> OAuthTokenSet:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        code : str
            The authorization code from the redirect.
        redirect_uri : str
            The redirect URI used in the authorization request.
        verifier : str
            The PKCE code verifier.

        Returns
        -------
        OAuthTokenSet
            The parsed token response.

        Raises
        ------
        NetworkError
            If the request could not be completed.
        ExchangeFailed
            If the endpoint answered with a non-success status or an
            unusable body.
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
            "code_verifier": verifier,
        }

        try:
            resp = await self._get_client().post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.http_timeout,
            )
        except httpx.HTTPError as exc:
            msg = f"Token exchange request failed: {exc}"
            raise NetworkError(msg, provider=self.name) from exc

        if not resp.is_success:
            msg = f"Token exchange failed: {resp.status_code}"
            raise ExchangeFailed(msg, status=resp.status_code, body=resp.text, provider=self.name)

        try:
            raw: Any = resp.json()
        except json.JSONDecodeError as exc:
            msg = "Token endpoint returned a non-JSON body"
            raise ExchangeFailed(
                msg, status=resp.status_code, body=resp.text, provider=self.name
            ) from exc

        if not isinstance(raw, dict) or not raw.get("access_token"):
            msg = "Token response did not include an access token"
            raise ExchangeFailed(msg, status=resp.status_code, body=resp.text, provider=self.name)

        logger.debug("Token response: %s", redact_sensitive_data(raw))
        return OAuthTokenSet.from_response(raw)

    async def get_userinfo(self, access_token: str) -> UserInfo:
        """Fetch the signed-in user's profile.

        Raises
        ------
        IdentityFetchDegraded
            On any failure; callers fall back to a placeholder identity.
        """
        try:
            resp = await self._get_client().get(
                self.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.identity_timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            msg = f"User info request failed: {exc}"
            raise IdentityFetchDegraded(msg, provider=self.name) from exc

        if not isinstance(data, dict):
            msg = "User info response is not a JSON object"
            raise IdentityFetchDegraded(msg, provider=self.name)
        return UserInfo.from_response(data)

    async def probe_cloud_access(self, access_token: str) -> bool:
        """Check that the token can call a Cloud API. Never raises."""
        if not self.cloud_probe_url:
            return False
        try:
            resp = await self._get_client().get(
                self.cloud_probe_url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.identity_timeout,
            )
        except httpx.HTTPError as exc:
            logger.debug("Cloud access probe failed: %s", exc)
            return False
        return resp.is_success
