"""
Tests for per-attempt authentication injection.
"""

import base64

import httpx
import pytest

from connectors.auth import ApiKeyAuth, BearerAuth, OAuth2BearerAuth, build_auth
from utils.schemas import (
    ApiKeyAuthConfig,
    BasicAuthConfig,
    BearerAuthConfig,
    NoAuthConfig,
    OAuth2AuthConfig,
)

from conftest import ScriptedUpstream


async def _send(auth, upstream: ScriptedUpstream) -> httpx.Response:
    async with httpx.AsyncClient(base_url="https://api.example.com", auth=auth, transport=upstream.transport) as client:
        return await client.get("/resource")


class TestBuildAuth:
    def test_none_injects_nothing(self):
        assert build_auth(NoAuthConfig()) is None

    def test_variant_mapping(self):
        assert isinstance(build_auth(ApiKeyAuthConfig(api_key="k")), ApiKeyAuth)
        assert isinstance(build_auth(BearerAuthConfig(token="t")), BearerAuth)
        assert isinstance(build_auth(OAuth2AuthConfig(client_id="c", client_secret="s")), OAuth2BearerAuth)
        assert isinstance(build_auth(BasicAuthConfig(username="u", password="p")), httpx.BasicAuth)


class TestInjection:
    @pytest.mark.asyncio
    async def test_api_key_header(self):
        upstream = ScriptedUpstream(200)
        await _send(build_auth(ApiKeyAuthConfig(api_key="k-1", header_name="X-Api-Key")), upstream)
        sent = upstream.requests[0]
        assert sent.headers["X-Api-Key"] == "k-1"
        assert "api_key" not in sent.url.params

    @pytest.mark.asyncio
    async def test_api_key_query_param_default_name(self):
        upstream = ScriptedUpstream(200)
        await _send(build_auth(ApiKeyAuthConfig(api_key="k-1")), upstream)
        assert upstream.requests[0].url.params["api_key"] == "k-1"

    @pytest.mark.asyncio
    async def test_api_key_custom_param(self):
        upstream = ScriptedUpstream(200)
        await _send(build_auth(ApiKeyAuthConfig(api_key="k-1", param_name="key")), upstream)
        assert upstream.requests[0].url.params["key"] == "k-1"

    @pytest.mark.asyncio
    async def test_bearer(self):
        upstream = ScriptedUpstream(200)
        await _send(build_auth(BearerAuthConfig(token="tok")), upstream)
        assert upstream.requests[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_basic(self):
        upstream = ScriptedUpstream(200)
        await _send(build_auth(BasicAuthConfig(username="user", password="pw")), upstream)
        expected = base64.b64encode(b"user:pw").decode()
        assert upstream.requests[0].headers["Authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_oauth2_without_token_sends_no_header(self):
        upstream = ScriptedUpstream(200)
        await _send(build_auth(OAuth2AuthConfig(client_id="c", client_secret="s")), upstream)
        assert "Authorization" not in upstream.requests[0].headers


def _accepts(token: str):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") == f"Bearer {token}":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(401, json={"error": "invalid_token"})

    return handler


class TestOAuth2Refresh:
    @pytest.mark.asyncio
    async def test_single_refresh_on_401(self):
        upstream = ScriptedUpstream(_accepts("fresh"))
        calls = []

        async def refresher(rejected):
            calls.append(rejected)
            return "fresh"

        auth = OAuth2BearerAuth(OAuth2AuthConfig(client_id="c", client_secret="s", access_token="stale"), refresher)
        response = await _send(auth, upstream)

        assert response.status_code == 200
        assert calls == ["stale"]
        assert [h["Authorization"] for h in upstream.headers] == ["Bearer stale", "Bearer fresh"]

    @pytest.mark.asyncio
    async def test_gives_up_after_one_refresh(self):
        upstream = ScriptedUpstream(401)
        calls = []

        async def refresher(rejected):
            calls.append(rejected)
            return "still-bad"

        auth = OAuth2BearerAuth(OAuth2AuthConfig(client_id="c", client_secret="s", access_token="stale"), refresher)
        response = await _send(auth, upstream)

        assert response.status_code == 401
        assert len(calls) == 1
        assert upstream.calls == 2

    @pytest.mark.asyncio
    async def test_no_token_from_refresher(self):
        upstream = ScriptedUpstream(401)

        async def refresher(rejected):
            return None

        auth = OAuth2BearerAuth(OAuth2AuthConfig(client_id="c", client_secret="s", access_token="stale"), refresher)
        response = await _send(auth, upstream)

        assert response.status_code == 401
        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_valid_token_not_refreshed(self):
        upstream = ScriptedUpstream(_accepts("good"))
        calls = []

        async def refresher(rejected):
            calls.append(rejected)
            return "other"

        auth = OAuth2BearerAuth(OAuth2AuthConfig(client_id="c", client_secret="s", access_token="good"), refresher)
        response = await _send(auth, upstream)

        assert response.status_code == 200
        assert calls == []
