"""
GitHubProfile — user info and token revocation for GitHub OAuth apps.

Revocation goes through GitHub's OAuth application API, authenticated
with the app's own client id and secret.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from connectors.base import BaseProviderProfile
from utils.schemas import OAuth2Provider

logger = logging.getLogger(__name__)

_GH_API = "https://api.github.com"


class GitHubProfile(BaseProviderProfile):
    @property
    def provider_name(self) -> str:
        return "github"

    @property
    def display_name(self) -> str:
        return "GitHub"

    @property
    def user_info_url(self) -> Optional[str]:
        return f"{_GH_API}/user"

    @property
    def supports_revocation(self) -> bool:
        return True

    def user_info_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }

    def parse_user_info(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return {
            "id": str(payload.get("id", "")),
            "login": payload.get("login"),
            "name": payload.get("name"),
            "avatar_url": payload.get("avatar_url"),
            "email": payload.get("email"),
        }

    async def revoke_token(
        self,
        client: httpx.AsyncClient,
        provider: OAuth2Provider,
        access_token: str,
    ) -> bool:
        resp = await client.request(
            "DELETE",
            f"{_GH_API}/applications/{provider.client_id}/token",
            auth=(provider.client_id, provider.client_secret),
            json={"access_token": access_token},
            headers={"Accept": "application/vnd.github+json"},
        )
        return resp.status_code == 204
