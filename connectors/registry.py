"""
ProviderProfileRegistry — looks up provider profiles by provider name.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from connectors.base import BaseProviderProfile
from connectors.github import GitHubProfile
from connectors.google import GoogleProfile
from connectors.microsoft import MicrosoftProfile
from connectors.slack import SlackProfile

logger = logging.getLogger(__name__)

# ── All known profiles — add new ones here ───────────────────────────────

_ALL_PROFILES: List[BaseProviderProfile] = [
    GoogleProfile(),
    MicrosoftProfile(),
    GitHubProfile(),
    SlackProfile(),
]


class ProviderProfileRegistry:
    """Singleton registry of provider profiles."""

    _instance: Optional["ProviderProfileRegistry"] = None

    def __new__(cls) -> "ProviderProfileRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._profiles = {p.provider_name: p for p in _ALL_PROFILES}
            logger.info("Provider profiles registered: %s", ", ".join(cls._instance._profiles))
        return cls._instance

    def get(self, provider_name: str) -> Optional[BaseProviderProfile]:
        """Profile for *provider_name* (case-insensitive), or None for generic providers."""
        return self._profiles.get(provider_name.lower())

    def list_profiles(self) -> List[Dict[str, Any]]:
        return [
            {
                "provider": p.provider_name,
                "display_name": p.display_name,
                "user_info": p.user_info_url is not None,
                "revocation": p.supports_revocation,
            }
            for p in self._profiles.values()
        ]
