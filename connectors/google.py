"""
GoogleProfile — user info and token revocation for Google OAuth2 providers.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from connectors.base import BaseProviderProfile
from utils.schemas import OAuth2Provider

logger = logging.getLogger(__name__)

_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


class GoogleProfile(BaseProviderProfile):
    @property
    def provider_name(self) -> str:
        return "google"

    @property
    def display_name(self) -> str:
        return "Google"

    @property
    def user_info_url(self) -> Optional[str]:
        return _GOOGLE_USERINFO_URL

    @property
    def supports_revocation(self) -> bool:
        return True

    def parse_user_info(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return {
            "id": payload.get("id"),
            "email": payload.get("email"),
            "name": payload.get("name"),
            "picture": payload.get("picture"),
        }

    async def revoke_token(
        self,
        client: httpx.AsyncClient,
        provider: OAuth2Provider,
        access_token: str,
    ) -> bool:
        resp = await client.post(
            _GOOGLE_REVOKE_URL,
            data={"token": access_token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return resp.status_code == 200
