"""
ConnectionCache — tenant-scoped cache of decrypted connections.

Each entry holds the decrypted ``ApiConnection``, its dedicated
``httpx.AsyncClient`` (base URL, default headers, auth flow) and its
``RateLimiter``, keyed by ``(tenant_id, connection_id)``.  The store stays
the source of truth; entries are derived copies rebuilt on demand.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import httpx
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from config.settings import config
from connectors.auth import build_auth
from connectors.encryption import CredentialCipher, decode_legacy_auth, is_encrypted
from connectors.errors import DecryptionError
from connectors.rate_limiter import RateLimiter
from database.models import Connection
from database.store import ConnectionStore
from utils.schemas import ApiConnection, AuthConfig, NoAuthConfig, RateLimitPolicy, RetryPolicy

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]
ClientFactory = Callable[[ApiConnection], httpx.AsyncClient]
LimiterFactory = Callable[[RateLimitPolicy], RateLimiter]

_auth_adapter: TypeAdapter = TypeAdapter(AuthConfig)


@dataclass
class CachedConnection:
    tenant_id: str
    connection: ApiConnection
    client: httpx.AsyncClient
    limiter: RateLimiter


def default_client_factory(connection: ApiConnection) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=connection.base_url,
        headers=connection.headers,
        auth=build_auth(connection.authentication),
        timeout=config.default_request_timeout_seconds,
    )


def decode_authentication(cipher: CredentialCipher, stored: Optional[str]) -> Tuple[AuthConfig, bool]:
    """
    Decrypt a stored ``authentication`` value.

    Returns ``(auth, is_legacy)``; legacy values are decoded without the
    key so they can be re-encrypted.
    """
    if not stored:
        return NoAuthConfig(), False
    legacy = not is_encrypted(stored)
    raw = decode_legacy_auth(stored) if legacy else cipher.decrypt(stored)
    try:
        return _auth_adapter.validate_python(raw), legacy
    except PydanticValidationError as exc:
        raise DecryptionError("Stored authentication is not a valid auth configuration") from exc


def connection_from_row(row: Connection, auth: AuthConfig) -> ApiConnection:
    return ApiConnection(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        type=row.type,
        base_url=row.base_url,
        authentication=auth,
        headers=row.headers or {},
        rate_limit=RateLimitPolicy(**(row.rate_limit or {})),
        retry_config=RetryPolicy(**(row.retry_config or {})),
        is_active=row.is_active,
        metadata=row.metadata_ or {},
    )


class ConnectionCache:
    def __init__(
        self,
        store: ConnectionStore,
        cipher: CredentialCipher,
        *,
        client_factory: ClientFactory = default_client_factory,
        limiter_factory: LimiterFactory = RateLimiter,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._client_factory = client_factory
        self._limiter_factory = limiter_factory
        self._entries: Dict[CacheKey, CachedConnection] = {}
        self._locks: Dict[CacheKey, asyncio.Lock] = {}

    def _lock(self, key: CacheKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ── Lookup ──────────────────────────────────────────────────────────

    async def get(self, tenant_id: str, connection_id: str) -> Optional[ApiConnection]:
        entry = await self.get_entry(tenant_id, connection_id)
        return entry.connection if entry else None

    async def get_entry(self, tenant_id: str, connection_id: str) -> Optional[CachedConnection]:
        key = (tenant_id, connection_id)
        entry = self._checked(key)
        if entry is not None:
            return entry

        async with self._lock(key):
            entry = self._checked(key)
            if entry is not None:
                return entry

            row = await self._store.get_connection(tenant_id, connection_id)
            if row is None:
                return None
            connection = await self.load_row(row)
            return self._install(connection)

    def _checked(self, key: CacheKey) -> Optional[CachedConnection]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.tenant_id != key[0] or entry.connection.tenant_id != key[0]:
            logger.warning("Tenant mismatch for cached connection %s; treating as not found", key[1])
            return None
        return entry

    async def load_row(self, row: Connection) -> ApiConnection:
        """Decrypt a stored row, migrating legacy credentials to an envelope."""
        auth, legacy = decode_authentication(self._cipher, row.authentication)
        if legacy and row.authentication and self._cipher.is_configured:
            try:
                await self._store.update_connection(
                    row.tenant_id,
                    row.id,
                    {"authentication": self._cipher.encrypt_to_string(auth.model_dump(mode="json"))},
                )
                logger.info("Migrated legacy credentials for connection %s", row.id)
            except Exception:
                logger.warning("Legacy credential migration failed for connection %s", row.id, exc_info=True)
        return connection_from_row(row, auth)

    # ── Mutation ────────────────────────────────────────────────────────

    def _install(self, connection: ApiConnection) -> CachedConnection:
        entry = CachedConnection(
            tenant_id=connection.tenant_id,
            connection=connection,
            client=self._client_factory(connection),
            limiter=self._limiter_factory(connection.rate_limit),
        )
        self._entries[(connection.tenant_id, connection.id)] = entry
        return entry

    async def put(self, connection: ApiConnection) -> CachedConnection:
        """Cache a freshly created (or reloaded) connection, replacing any prior entry."""
        key = (connection.tenant_id, connection.id)
        async with self._lock(key):
            previous = self._entries.pop(key, None)
            if previous is not None:
                await previous.client.aclose()
            return self._install(connection)

    async def apply_update(
        self,
        connection: ApiConnection,
        *,
        rebuild_client: bool,
        rebuild_limiter: bool,
    ) -> None:
        """Swap in an updated connection; rebuild the client and/or limiter as needed."""
        key = (connection.tenant_id, connection.id)
        async with self._lock(key):
            entry = self._entries.get(key)
            if entry is None:
                return
            entry.connection = connection
            if rebuild_client:
                old_client = entry.client
                entry.client = self._client_factory(connection)
                await old_client.aclose()
            if rebuild_limiter:
                entry.limiter = self._limiter_factory(connection.rate_limit)

    async def invalidate(self, tenant_id: str, connection_id: str) -> None:
        key = (tenant_id, connection_id)
        async with self._lock(key):
            entry = self._entries.pop(key, None)
            if entry is not None:
                await entry.client.aclose()
        self._locks.pop(key, None)

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def populate(self) -> int:
        """Warm the cache with every active connection.  Returns the number loaded."""
        loaded = 0
        for row in await self._store.list_active_connections():
            try:
                connection = await self.load_row(row)
            except DecryptionError:
                logger.error("Cannot decrypt credentials for connection %s (tenant %s)", row.id, row.tenant_id)
                continue
            await self.put(connection)
            loaded += 1
        logger.info("Connection cache warmed with %d connections", loaded)
        return loaded

    async def close(self) -> None:
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await entry.client.aclose()
