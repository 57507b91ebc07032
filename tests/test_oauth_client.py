"""Tests for the Google authorization-code exchange."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from istream.service.errors import AuthenticationError, DependencyError
from istream.service.oauth import GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL, GoogleOAuthClient
from istream.storage.memory import MemoryStore
from istream.storage.models import utcnow


def google_transport(userinfo=None, token_status=200, delay_error=False):
    def handler(request: httpx.Request) -> httpx.Response:
        if delay_error:
            raise httpx.ReadTimeout("slow provider", request=request)
        if str(request.url) == GOOGLE_TOKEN_URL:
            return httpx.Response(token_status, json={"access_token": "provider-access"})
        if str(request.url) == GOOGLE_USERINFO_URL:
            assert request.headers["Authorization"] == "Bearer provider-access"
            return httpx.Response(
                200,
                json=userinfo
                or {
                    "id": "g-42",
                    "email": "oauth@example.com",
                    "name": "OAuth User",
                    "picture": "https://lh3.example/p.jpg",
                },
            )
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def make_client(store, transport=None, configured=True):
    return GoogleOAuthClient(
        store,
        client_id="client-id" if configured else None,
        client_secret="client-secret" if configured else None,
        redirect_uri="http://testserver/api/v1/users/auth/google/callback",
        transport=transport,
    )


def _state_from(url):
    return parse_qs(urlparse(url).query)["state"][0]


def test_authorization_url_contains_state(store):
    client = make_client(store)
    url = client.authorization_url()
    params = parse_qs(urlparse(url).query)
    assert params["client_id"] == ["client-id"]
    assert params["response_type"] == ["code"]
    assert params["state"][0] in store.oauth_states


def test_authorization_url_requires_configuration(store):
    with pytest.raises(DependencyError):
        make_client(store, configured=False).authorization_url()


async def test_exchange_yields_profile(store):
    client = make_client(store, google_transport())
    state = _state_from(client.authorization_url())

    profile = await client.exchange("auth-code", state)

    assert profile.provider_id == "g-42"
    assert profile.email == "oauth@example.com"
    assert profile.display_name == "OAuth User"
    assert profile.avatar_url == "https://lh3.example/p.jpg"


async def test_state_from_one_worker_completes_on_another(store):
    """Two client instances over one store model two server workers."""
    starter = make_client(store, google_transport())
    finisher = make_client(store, google_transport())
    state = _state_from(starter.authorization_url())

    profile = await finisher.exchange("auth-code", state)

    assert profile.provider_id == "g-42"
    with pytest.raises(AuthenticationError):
        await starter.exchange("auth-code", state)


async def test_state_survives_store_reload(tmp_path):
    client = make_client(MemoryStore(fs_root=str(tmp_path)), google_transport())
    state = _state_from(client.authorization_url())

    reloaded = make_client(MemoryStore(fs_root=str(tmp_path)), google_transport())
    profile = await reloaded.exchange("auth-code", state)
    assert profile.email == "oauth@example.com"


async def test_state_is_single_use(store):
    client = make_client(store, google_transport())
    state = _state_from(client.authorization_url())
    await client.exchange("auth-code", state)
    with pytest.raises(AuthenticationError):
        await client.exchange("auth-code", state)


async def test_expired_state_rejected(store):
    client = make_client(store, google_transport())
    store.save_oauth_state("stale", utcnow() - timedelta(seconds=1))
    with pytest.raises(AuthenticationError):
        await client.exchange("auth-code", "stale")
    assert "stale" not in store.oauth_states


async def test_unknown_state_rejected(store):
    client = make_client(store, google_transport())
    with pytest.raises(AuthenticationError):
        await client.exchange("auth-code", "forged")


async def test_provider_error_is_dependency_error(store):
    client = make_client(store, google_transport(token_status=400))
    state = _state_from(client.authorization_url())
    with pytest.raises(DependencyError):
        await client.exchange("auth-code", state)


async def test_provider_timeout_is_dependency_error(store):
    client = make_client(store, google_transport(delay_error=True))
    state = _state_from(client.authorization_url())
    with pytest.raises(DependencyError):
        await client.exchange("auth-code", state)
