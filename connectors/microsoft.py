"""
MicrosoftProfile — Microsoft Graph user info and sign-in session revocation.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from connectors.base import BaseProviderProfile
from utils.schemas import OAuth2Provider

logger = logging.getLogger(__name__)

_GRAPH_API = "https://graph.microsoft.com/v1.0"


class MicrosoftProfile(BaseProviderProfile):
    @property
    def provider_name(self) -> str:
        return "microsoft"

    @property
    def display_name(self) -> str:
        return "Microsoft"

    @property
    def user_info_url(self) -> Optional[str]:
        return f"{_GRAPH_API}/me"

    @property
    def supports_revocation(self) -> bool:
        return True

    def parse_user_info(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return {
            "id": payload.get("id"),
            "email": payload.get("mail") or payload.get("userPrincipalName"),
            "name": payload.get("displayName"),
        }

    async def revoke_token(
        self,
        client: httpx.AsyncClient,
        provider: OAuth2Provider,
        access_token: str,
    ) -> bool:
        # Graph has no per-token revocation; this invalidates the user's refresh tokens.
        resp = await client.post(
            f"{_GRAPH_API}/me/revokeSignInSessions",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return resp.status_code == 200
