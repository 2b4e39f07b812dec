"""
SlackProfile — Slack identity lookup.  Slack tokens are not revoked remotely.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from connectors.base import BaseProviderProfile

logger = logging.getLogger(__name__)


class SlackProfile(BaseProviderProfile):
    @property
    def provider_name(self) -> str:
        return "slack"

    @property
    def display_name(self) -> str:
        return "Slack"

    @property
    def user_info_url(self) -> Optional[str]:
        return "https://slack.com/api/users.identity"

    def parse_user_info(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        # Slack reports failures in the body with HTTP 200.
        if not payload.get("ok", False):
            logger.warning("Slack identity lookup failed: %s", payload.get("error", "unknown"))
            return None
        user = payload.get("user") or {}
        return {
            "id": user.get("id"),
            "name": user.get("name"),
            "email": user.get("email"),
            "team": (payload.get("team") or {}).get("id"),
        }
