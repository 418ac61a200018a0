"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import http.client
import os
import threading
import time

from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest

from gcpauth.config import GOOGLE_CLOUD_SCOPES, clear_settings
from gcpauth.events import SessionEventEmitter
from gcpauth.provider import GoogleCloudProvider
from gcpauth.registry import SessionRegistry
from gcpauth.secret_store import MemorySecretStore
from gcpauth.session_store import SessionStore
from gcpauth.types import Account, SessionRecord


SCOPES = list(GOOGLE_CLOUD_SCOPES)

TOKEN_URL = "https://oauth2.example.test/token"
USERINFO_URL = "https://www.example.test/oauth2/v2/userinfo"
PROBE_URL = "https://cloudresourcemanager.example.test/v1/projects"


# ── Environment isolation ───────────────────────────────────────────


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Any, monkeypatch: pytest.MonkeyPatch) -> Any:
    """Keep user/project config files and GCPAUTH_* variables out of tests."""
    for name in list(os.environ):
        if name.startswith("GCPAUTH"):
            monkeypatch.delenv(name, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("APPDATA", str(home))
    monkeypatch.chdir(tmp_path)
    clear_settings()
    yield
    clear_settings()


# ── Records ─────────────────────────────────────────────────────────


@pytest.fixture()
def make_record() -> Callable[..., SessionRecord]:
    """Factory for SessionRecords with sensible defaults."""
    counter = {"n": 0}

    def _make(
        scopes: list[str] | None = None,
        expires_at: float | None = None,
        created_at: float | None = None,
        record_id: str | None = None,
        email: str = "ada@example.com",
    ) -> SessionRecord:
        counter["n"] += 1
        return SessionRecord(
            id=record_id or f"session-{counter['n']}",
            account=Account(label=email, display_name="Ada Lovelace", id="1234"),
            scopes=tuple(scopes or SCOPES),
            access_token=f"at-{counter['n']}",
            refresh_token=f"rt-{counter['n']}",
            expires_at=expires_at if expires_at is not None else time.time() + 3600,
            created_at=created_at if created_at is not None else time.time(),
        )

    return _make


# ── Stores ──────────────────────────────────────────────────────────


@pytest.fixture()
def secret_store() -> MemorySecretStore:
    """An in-memory secret store."""
    return MemorySecretStore()


@pytest.fixture()
def session_store(secret_store: MemorySecretStore) -> SessionStore:
    """A session store over the in-memory secret store."""
    return SessionStore(secret_store)


@pytest.fixture()
def registry(session_store: SessionStore) -> SessionRegistry:
    """A session registry with its own event hub."""
    return SessionRegistry(session_store, SessionEventEmitter())


# ── HTTP ────────────────────────────────────────────────────────────


class FakeGoogle:
    """Scripted token/userinfo/probe endpoints for httpx.MockTransport."""

    def __init__(self) -> None:
        self.token_status = 200
        self.token_body: dict[str, Any] = {
            "access_token": "ya29.access",
            "refresh_token": "1//refresh",
            "expires_in": 3600,
            "token_type": "Bearer",
            "scope": " ".join(SCOPES),
        }
        self.userinfo_status = 200
        self.userinfo_body: dict[str, Any] = {
            "id": "10987",
            "email": "ada@example.com",
            "verified_email": True,
            "name": "Ada Lovelace",
            "given_name": "Ada",
            "family_name": "Lovelace",
            "picture": "",
            "locale": "en",
        }
        self.probe_status = 200
        self.token_requests: list[dict[str, str]] = []
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        if url == TOKEN_URL:
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            if self.token_status != 200:
                return httpx.Response(self.token_status, text='{"error": "invalid_grant"}')
            return httpx.Response(200, json=self.token_body)
        if url == USERINFO_URL:
            if self.userinfo_status != 200:
                return httpx.Response(self.userinfo_status, text="unavailable")
            return httpx.Response(200, json=self.userinfo_body)
        if url == PROBE_URL:
            return httpx.Response(self.probe_status, json={"projects": []})
        return httpx.Response(404)


@pytest.fixture()
def fake_google() -> FakeGoogle:
    """Scripted Google endpoints."""
    return FakeGoogle()


@pytest.fixture()
def provider(fake_google: FakeGoogle) -> GoogleCloudProvider:
    """A provider whose HTTP traffic goes to ``fake_google``."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_google.handler))
    return GoogleCloudProvider(
        client_id="client-123.apps.googleusercontent.com",
        client_secret="shh",
        token_url=TOKEN_URL,
        userinfo_url=USERINFO_URL,
        cloud_probe_url=PROBE_URL,
        http_client=client,
    )


# ── Listener / browser helpers ──────────────────────────────────────


def _send_request(
    port: int, path: str = "/callback", method: str = "GET", **params: str
) -> tuple[int, dict[str, str], str]:
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        query = urlencode(params)
        conn.request(method, f"{path}?{query}" if query else path)
        resp = conn.getresponse()
        return resp.status, dict(resp.getheaders()), resp.read().decode("utf-8")
    finally:
        conn.close()


@pytest.fixture()
def send_request() -> Callable[..., tuple[int, dict[str, str], str]]:
    """Blocking HTTP request to the local listener: (status, headers, body)."""
    return _send_request


class FakeBrowser:
    """Stands in for ``webbrowser.open``.

    Records the authorization URL and, unless told otherwise, follows
    it by hitting the redirect URI from a background thread the way
    the provider would after consent.
    """

    def __init__(self) -> None:
        self.urls: list[str] = []
        self.redirect_params: dict[str, str] | None = {"code": "auth-code-1"}
        self.use_state: str | None = None
        self.foreign_state_first: str | None = None
        self.responses: list[tuple[int, dict[str, str], str]] = []
        self._threads: list[threading.Thread] = []

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        if self.redirect_params is None:
            return True
        query = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        port = urlparse(query["redirect_uri"]).port
        params = dict(self.redirect_params)
        params.setdefault("state", self.use_state or query["state"])

        def follow() -> None:
            time.sleep(0.05)
            if self.foreign_state_first is not None:
                foreign = {**params, "state": self.foreign_state_first}
                self.responses.append(_send_request(port, **foreign))
            self.responses.append(_send_request(port, **params))

        thread = threading.Thread(target=follow, daemon=True)
        thread.start()
        self._threads.append(thread)
        return True

    @property
    def last_query(self) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(urlparse(self.urls[-1]).query).items()}

    def join(self) -> None:
        for thread in self._threads:
            thread.join(timeout=5)


@pytest.fixture()
def browser() -> FakeBrowser:
    """A fake system browser that completes consent automatically."""
    return FakeBrowser()
