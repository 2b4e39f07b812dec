"""
Pending OAuth2 authorizations — in-memory, keyed by ``state``.

A pending entry is created when an authorization URL is handed out and is
consumed exactly once by the callback.  Entries never outlive the process.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from config.settings import config
from connectors.errors import AuthorizationExpired, InvalidState

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PendingAuthorization:
    state: str
    provider_id: str
    user_id: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) > self.expires_at


class PendingAuthorizationStore:
    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else config.pending_auth_ttl_seconds)
        self._clock = clock
        self._pending: Dict[str, PendingAuthorization] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, state: str) -> bool:
        return state in self._pending

    async def put(self, state: str, *, provider_id: str, user_id: str, tenant_id: str) -> PendingAuthorization:
        now = self._clock()
        pending = PendingAuthorization(
            state=state,
            provider_id=provider_id,
            user_id=user_id,
            tenant_id=tenant_id,
            created_at=now,
            expires_at=now + self._ttl,
        )
        async with self._lock:
            self._pending[state] = pending
        return pending

    async def consume(self, state: str) -> PendingAuthorization:
        """
        Remove and return the entry for *state*.

        The pop happens under the lock, so of two callbacks racing on one
        state exactly one gets the entry.

        Raises
        ------
        InvalidState         – unknown or already consumed
        AuthorizationExpired – the entry outlived its TTL (it is still removed)
        """
        async with self._lock:
            pending = self._pending.pop(state, None)
        if pending is None:
            raise InvalidState("Invalid or expired state parameter")
        if pending.is_expired(self._clock()):
            raise AuthorizationExpired("Authorization request expired")
        return pending

    async def sweep_expired(self) -> int:
        """Drop every expired entry.  Returns how many were removed."""
        now = self._clock()
        async with self._lock:
            expired = [state for state, pending in self._pending.items() if pending.is_expired(now)]
            for state in expired:
                del self._pending[state]
        if expired:
            logger.info("Swept %d expired pending authorizations", len(expired))
        return len(expired)
