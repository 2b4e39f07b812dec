"""
Gateway error taxonomy.

Messages carry identifiers and non-secret metadata only.  Nothing in here
should ever be built from a credential value.
"""

from __future__ import annotations

from typing import Optional

import httpx


class GatewayError(Exception):
    """Base error for the integration gateway."""


class ValidationError(GatewayError):
    """Bad base URL, incomplete auth config, or non-positive limits."""


class NotFoundError(GatewayError):
    """Resource absent, or owned by another tenant."""


class ConnectionNotFoundError(NotFoundError):
    def __init__(self, connection_id: str, tenant_id: str) -> None:
        self.connection_id = connection_id
        self.tenant_id = tenant_id
        super().__init__(f"Connection '{connection_id}' not found for tenant '{tenant_id}'")


class ProviderNotFoundError(NotFoundError):
    def __init__(self, provider_id: str, tenant_id: str) -> None:
        self.provider_id = provider_id
        self.tenant_id = tenant_id
        super().__init__(f"OAuth2 provider '{provider_id}' not found for tenant '{tenant_id}'")


class RateLimitExceeded(GatewayError):
    """Admission rejected by the per-connection limiter.  Never retried here."""

    def __init__(self, window: str, limit: int) -> None:
        self.window = window
        self.limit = limit
        super().__init__(f"Rate limit exceeded: requests per {window} (limit {limit})")


class DispatchError(GatewayError):
    """An outbound attempt failed."""

    status_code: Optional[int] = None
    response: Optional[httpx.Response] = None


class TransportError(DispatchError):
    """No response: connection failure or timeout."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        self.cause = cause
        super().__init__(message)


class UpstreamStatusError(DispatchError):
    """The upstream answered with an error status."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.status_code = response.status_code
        super().__init__(
            f"Upstream returned {response.status_code} for "
            f"{response.request.method} {response.request.url.path}"
        )


class DecryptionError(GatewayError):
    """Envelope malformed or authentication tag did not verify."""


class EncryptionKeyMissingError(GatewayError):
    """No encryption key is configured."""


# ── OAuth2 ─────────────────────────────────────────────────────────────


class OAuth2Error(GatewayError):
    """Base for OAuth2 flow failures."""


class OAuth2ProviderDenied(OAuth2Error):
    """The provider redirected back with an ``error`` (e.g. user cancelled consent)."""

    def __init__(self, error: str) -> None:
        self.error = error
        super().__init__(f"OAuth2 error: {error}")


class InvalidState(OAuth2Error):
    """Unknown or already-consumed ``state``."""


class AuthorizationExpired(OAuth2Error):
    """The pending authorization outlived its TTL."""


class TokenExchangeError(OAuth2Error):
    """The token endpoint rejected the authorization code."""


class TokenRefreshError(OAuth2Error):
    """Refresh impossible (no refresh token) or rejected by the provider."""
