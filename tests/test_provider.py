"""Unit tests for GoogleCloudProvider."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from gcpauth.config import GcpAuthSettings
from gcpauth.exceptions import (
    ConfigurationError,
    ExchangeFailed,
    IdentityFetchDegraded,
    NetworkError,
)
from gcpauth.pkce import PKCEChallenge
from gcpauth.provider import GoogleCloudProvider

from tests.conftest import PROBE_URL, SCOPES, USERINFO_URL


REDIRECT = "http://localhost:3000/callback"


def _provider_with(handler, **kwargs) -> GoogleCloudProvider:
    return GoogleCloudProvider(
        client_id="cid",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


# ── Authorization URL ───────────────────────────────────────────────


class TestAuthorizeUrl:
    """Tests for build_authorize_url."""

    def test_parameters(self, provider: GoogleCloudProvider) -> None:
        """The URL carries every parameter of a PKCE authorization request."""
        pkce = PKCEChallenge.generate()
        url = provider.build_authorize_url(REDIRECT, "nonce-1", pkce, SCOPES)
        parsed = urlparse(url)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == provider.authorize_url
        assert query == {
            "client_id": "client-123.apps.googleusercontent.com",
            "redirect_uri": REDIRECT,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "state": "nonce-1",
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",
            "prompt": "consent",
        }

    def test_verifier_not_in_url(self, provider: GoogleCloudProvider) -> None:
        """The verifier itself never leaves the process."""
        pkce = PKCEChallenge.generate()
        assert pkce.verifier not in provider.build_authorize_url(REDIRECT, "s", pkce, SCOPES)

    def test_missing_client_id(self) -> None:
        """Without a client id the URL cannot be built."""
        with pytest.raises(ConfigurationError, match="client id"):
            GoogleCloudProvider(client_id="").build_authorize_url(
                REDIRECT, "s", PKCEChallenge.generate(), SCOPES
            )

    def test_from_settings(self) -> None:
        """from_settings copies the oauth and timeout sections."""
        settings = GcpAuthSettings(
            oauth={"client_id": "abc", "client_secret": "xyz"}, timeout={"http": 7}
        )
        provider = GoogleCloudProvider.from_settings(settings)
        assert provider.client_id == "abc"
        assert provider.client_secret == "xyz"
        assert provider.http_timeout == 7
        assert provider.token_url == settings.oauth.token_url


# ── Token exchange ──────────────────────────────────────────────────


class TestExchangeCode:
    """Tests for exchange_code."""

    @pytest.mark.asyncio
    async def test_sends_pkce_form(self, provider: GoogleCloudProvider, fake_google) -> None:
        """The exchange posts the code, verifier and client credentials."""
        tokens = await provider.exchange_code("the-code", REDIRECT, "the-verifier")

        assert fake_google.token_requests == [
            {
                "client_id": "client-123.apps.googleusercontent.com",
                "client_secret": "shh",
                "code": "the-code",
                "grant_type": "authorization_code",
                "redirect_uri": REDIRECT,
                "code_verifier": "the-verifier",
            }
        ]
        assert tokens.access_token == "ya29.access"
        assert tokens.refresh_token == "1//refresh"
        assert tokens.granted_scopes == SCOPES

    @pytest.mark.asyncio
    async def test_error_status(self, provider: GoogleCloudProvider, fake_google) -> None:
        """A non-2xx answer raises ExchangeFailed with status and body."""
        fake_google.token_status = 400
        with pytest.raises(ExchangeFailed) as exc_info:
            await provider.exchange_code("c", REDIRECT, "v")
        assert exc_info.value.status == 400
        assert "invalid_grant" in exc_info.value.body
        assert "invalid_grant" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_access_token(self, provider: GoogleCloudProvider, fake_google) -> None:
        """A success without an access token is still a failed exchange."""
        fake_google.token_body = {"token_type": "Bearer"}
        with pytest.raises(ExchangeFailed, match="access token"):
            await provider.exchange_code("c", REDIRECT, "v")

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        """An HTML answer from the token endpoint is a failed exchange."""
        provider = _provider_with(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(ExchangeFailed, match="non-JSON"):
            await provider.exchange_code("c", REDIRECT, "v")

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        """A request that never completes raises NetworkError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider_with(handler)
        with pytest.raises(NetworkError, match="connection refused"):
            await provider.exchange_code("c", REDIRECT, "v")


# ── Identity ────────────────────────────────────────────────────────


class TestIdentity:
    """Tests for get_userinfo and probe_cloud_access."""

    @pytest.mark.asyncio
    async def test_userinfo(self, provider: GoogleCloudProvider, fake_google) -> None:
        """The profile is fetched with the bearer token."""
        info = await provider.get_userinfo("ya29.access")
        assert info.email == "ada@example.com"
        assert info.id == "10987"
        request = fake_google.requests[-1]
        assert str(request.url) == USERINFO_URL
        assert request.headers["Authorization"] == "Bearer ya29.access"

    @pytest.mark.asyncio
    async def test_userinfo_failure_degrades(
        self, provider: GoogleCloudProvider, fake_google
    ) -> None:
        """A failing identity endpoint raises IdentityFetchDegraded."""
        fake_google.userinfo_status = 500
        with pytest.raises(IdentityFetchDegraded):
            await provider.get_userinfo("ya29.access")

    @pytest.mark.asyncio
    async def test_probe(self, provider: GoogleCloudProvider, fake_google) -> None:
        """The probe reports whether the Cloud API accepted the token."""
        assert await provider.probe_cloud_access("ya29.access") is True
        assert str(fake_google.requests[-1].url) == PROBE_URL
        fake_google.probe_status = 403
        assert await provider.probe_cloud_access("ya29.access") is False

    @pytest.mark.asyncio
    async def test_probe_disabled(self, fake_google) -> None:
        """An empty probe URL skips the call."""
        provider = _provider_with(fake_google.handler, cloud_probe_url="")
        assert await provider.probe_cloud_access("ya29.access") is False
        assert fake_google.requests == []

    @pytest.mark.asyncio
    async def test_probe_transport_error(self) -> None:
        """Transport failures during the probe read as no access."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        assert await _provider_with(handler).probe_cloud_access("t") is False


@pytest.mark.asyncio
async def test_aclose_recreates_client(provider: GoogleCloudProvider) -> None:
    """After aclose() a fresh client is created on demand."""
    first = provider._get_client()  # pylint: disable=protected-access
    await provider.aclose()
    assert first.is_closed
    second = provider._get_client()  # pylint: disable=protected-access
    assert second is not first
    await provider.aclose()
