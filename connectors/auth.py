"""
Authentication injection for outbound requests.

Each ``AuthConfig`` variant maps to an ``httpx.Auth`` flow, so credentials
are applied on every attempt (including retries) by the client itself.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Awaitable, Callable, Generator, Optional

import httpx

from utils.schemas import (
    ApiKeyAuthConfig,
    AuthConfig,
    BasicAuthConfig,
    BearerAuthConfig,
    NoAuthConfig,
    OAuth2AuthConfig,
)

logger = logging.getLogger(__name__)

# Receives the token that was rejected; returns the token to retry with, or None.
TokenRefresher = Callable[[Optional[str]], Awaitable[Optional[str]]]


class ApiKeyAuth(httpx.Auth):
    def __init__(self, auth: ApiKeyAuthConfig) -> None:
        self._auth = auth

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if self._auth.header_name:
            request.headers[self._auth.header_name] = self._auth.api_key
        else:
            request.url = request.url.copy_merge_params({self._auth.param_name or "api_key": self._auth.api_key})
        yield request


class BearerAuth(httpx.Auth):
    def __init__(self, token: str) -> None:
        self._token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self._token}"
        yield request


class OAuth2BearerAuth(httpx.Auth):
    """
    Bearer auth from the connection's current access token.

    On a 401 the refresher is asked for a new token once; the request is
    resent a single time with it.  A second 401 is returned to the caller.
    """

    def __init__(self, auth: OAuth2AuthConfig, refresher: Optional[TokenRefresher] = None) -> None:
        self._auth = auth
        self._refresher = refresher

    def _apply(self, request: httpx.Request) -> None:
        if self._auth.access_token:
            request.headers["Authorization"] = f"Bearer {self._auth.access_token}"

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        self._apply(request)
        yield request

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        rejected = self._auth.access_token
        self._apply(request)
        response = yield request

        if response.status_code != 401 or self._refresher is None:
            return

        new_token = await self._refresher(rejected)
        if not new_token:
            logger.info("OAuth2 token refresh unavailable; returning 401")
            return
        request.headers["Authorization"] = f"Bearer {new_token}"
        yield request


def build_auth(auth: AuthConfig, refresher: Optional[TokenRefresher] = None) -> Optional[httpx.Auth]:
    """Return the ``httpx.Auth`` for *auth*, or None when nothing is injected."""
    if isinstance(auth, NoAuthConfig):
        return None
    if isinstance(auth, ApiKeyAuthConfig):
        return ApiKeyAuth(auth)
    if isinstance(auth, BearerAuthConfig):
        return BearerAuth(auth.token)
    if isinstance(auth, OAuth2AuthConfig):
        return OAuth2BearerAuth(auth, refresher)
    if isinstance(auth, BasicAuthConfig):
        return httpx.BasicAuth(auth.username, auth.password)
    raise TypeError(f"Unsupported auth config: {type(auth).__name__}")
