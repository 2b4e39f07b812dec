"""
BaseProviderProfile — per-provider behaviour the OAuth2 flow cannot get
from the provider record alone.

A profile is selected by the lowercase provider *name* of a registered
OAuth2 provider ("google", "github", …).  It knows where to fetch the
user's profile after the code exchange and whether (and how) the
provider can revoke a token.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from utils.schemas import OAuth2Provider

logger = logging.getLogger(__name__)


class BaseProviderProfile(ABC):
    """Abstract base for provider profiles."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Lowercase slug matched against ``OAuth2Provider.name``."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    def user_info_url(self) -> Optional[str]:
        return None

    @property
    def supports_revocation(self) -> bool:
        return False

    # ── User info ───────────────────────────────────────────────────────

    def user_info_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def parse_user_info(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return payload

    async def fetch_user_info(self, client: httpx.AsyncClient, access_token: str) -> Optional[Dict[str, Any]]:
        """
        GET the provider's profile endpoint with the fresh access token.

        Raises ``httpx.HTTPError`` on failure; callers treat this as
        best-effort.
        """
        if not self.user_info_url:
            return None
        resp = await client.get(self.user_info_url, headers=self.user_info_headers(access_token))
        resp.raise_for_status()
        return self.parse_user_info(resp.json())

    # ── Revocation ──────────────────────────────────────────────────────

    async def revoke_token(
        self,
        client: httpx.AsyncClient,
        provider: OAuth2Provider,
        access_token: str,
    ) -> bool:
        """
        Revoke the token at the provider.
        Returns True on success, False if the provider doesn't support revocation.
        """
        return False
