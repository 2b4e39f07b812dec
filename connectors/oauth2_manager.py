"""
OAuth2Manager — authorization-code flow for tenant-registered providers.

    register_provider → generate_auth_url → handle_callback
        → refresh_token / get_valid_access_token → revoke_connection

Client secrets and tokens are encrypted at rest through the
``CredentialCipher``; decrypted providers are cached per
``(tenant_id, provider_id)``.  Pending authorizations live in memory and are
swept periodically by a background task.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError as PydanticValidationError

from config.settings import config
from connectors.encryption import CredentialCipher
from connectors.errors import (
    ConnectionNotFoundError,
    DecryptionError,
    OAuth2ProviderDenied,
    ProviderNotFoundError,
    TokenExchangeError,
    TokenRefreshError,
    ValidationError,
)
from connectors.events import EventBus
from connectors.pending import PendingAuthorizationStore
from connectors.registry import ProviderProfileRegistry
from database.models import OAuth2ConnectionRecord, OAuth2ProviderRecord
from database.store import ConnectionStore, ensure_utc
from utils.schemas import OAuth2Connection, OAuth2Provider, OAuth2ProviderCreate, OAuth2Token

logger = logging.getLogger(__name__)

ProviderKey = Tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuth2Manager:
    def __init__(
        self,
        store: ConnectionStore,
        cipher: CredentialCipher,
        *,
        events: Optional[EventBus] = None,
        pending: Optional[PendingAuthorizationStore] = None,
        profiles: Optional[ProviderProfileRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self.events = events if events is not None else EventBus()
        self.pending = pending if pending is not None else PendingAuthorizationStore()
        self._profiles = profiles if profiles is not None else ProviderProfileRegistry()
        self._http = httpx.AsyncClient(timeout=config.default_request_timeout_seconds, transport=transport)
        self._providers: Dict[ProviderKey, OAuth2Provider] = {}
        self._refresh_locks: Dict[ProviderKey, asyncio.Lock] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # ── Providers ───────────────────────────────────────────────────────

    async def register_provider(
        self, tenant_id: str, data: Union[OAuth2ProviderCreate, Dict[str, Any]]
    ) -> str:
        self._cipher.require_key("OAuth2Manager")
        if not isinstance(data, OAuth2ProviderCreate):
            try:
                data = OAuth2ProviderCreate.model_validate(data)
            except PydanticValidationError as exc:
                fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
                raise ValidationError(f"Invalid OAuth2ProviderCreate: {fields}") from None

        row = await self._store.create_provider(
            tenant_id,
            {
                "name": data.name,
                "auth_url": data.auth_url,
                "token_url": data.token_url,
                "client_id": data.client_id,
                "client_secret": self._cipher.encrypt_to_string(data.client_secret),
                "scopes": data.scopes,
                "redirect_uri": data.redirect_uri,
                "is_active": data.is_active,
            },
        )
        provider = OAuth2Provider(id=row.id, tenant_id=tenant_id, **data.model_dump())
        self._providers[(tenant_id, row.id)] = provider

        logger.info("Registered OAuth2 provider %s (%s) for tenant %s", row.id, data.name, tenant_id)
        await self.events.emit(
            "provider:registered",
            {"provider_id": row.id, "tenant_id": tenant_id, "name": data.name},
        )
        return row.id

    async def get_provider(self, provider_id: str, tenant_id: str) -> OAuth2Provider:
        provider = self._providers.get((tenant_id, provider_id))
        if provider is not None:
            return provider
        row = await self._store.get_provider(tenant_id, provider_id)
        if row is None:
            raise ProviderNotFoundError(provider_id, tenant_id)
        provider = self._provider_from_row(row)
        self._providers[(tenant_id, provider_id)] = provider
        return provider

    async def load_providers(self) -> int:
        """Warm the provider cache with every active provider.  Returns the number loaded."""
        loaded = 0
        for row in await self._store.list_active_providers():
            try:
                provider = self._provider_from_row(row)
            except DecryptionError:
                logger.error("Cannot decrypt client secret for provider %s (tenant %s)", row.id, row.tenant_id)
                continue
            self._providers[(row.tenant_id, row.id)] = provider
            loaded += 1
        logger.info("Loaded %d OAuth2 providers", loaded)
        return loaded

    def _provider_from_row(self, row: OAuth2ProviderRecord) -> OAuth2Provider:
        return OAuth2Provider(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name,
            auth_url=row.auth_url,
            token_url=row.token_url,
            client_id=row.client_id,
            client_secret=self._cipher.decrypt_from_string(row.client_secret, legacy_base64=True),
            scopes=row.scopes or [],
            redirect_uri=row.redirect_uri,
            is_active=row.is_active,
        )

    # ── Authorization-code flow ─────────────────────────────────────────

    async def generate_auth_url(
        self,
        provider_id: str,
        user_id: str,
        tenant_id: str,
        state: Optional[str] = None,
    ) -> str:
        """
        Build the provider's authorization URL and remember the pending request.

        ``state`` is minted with 32 random bytes unless supplied.
        """
        provider = await self.get_provider(provider_id, tenant_id)
        state = state or secrets.token_hex(32)
        await self.pending.put(state, provider_id=provider_id, user_id=user_id, tenant_id=tenant_id)

        params = {
            "response_type": "code",
            "client_id": provider.client_id,
            "redirect_uri": provider.redirect_uri,
            "scope": " ".join(provider.scopes),
            "state": state,
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
        }
        auth_url = f"{provider.auth_url}?{urlencode(params)}"

        await self.events.emit(
            "auth:url_generated",
            {"provider_id": provider_id, "user_id": user_id, "tenant_id": tenant_id},
        )
        return auth_url

    async def handle_callback(self, code: str, state: str, error: Optional[str] = None) -> OAuth2Connection:
        """
        Complete the flow: consume the state, exchange the code, persist tokens.

        Raises
        ------
        OAuth2ProviderDenied  – the provider returned ``error``
        InvalidState          – unknown or already used state
        AuthorizationExpired  – state older than the pending TTL
        TokenExchangeError    – the token endpoint refused the code
        """
        if error:
            raise OAuth2ProviderDenied(error)

        pending = await self.pending.consume(state)
        provider_id, user_id, tenant_id = pending.provider_id, pending.user_id, pending.tenant_id

        try:
            provider = await self.get_provider(provider_id, tenant_id)
            tokens = await self._exchange_code(provider, code)
            user_info = await self._fetch_user_info(provider, tokens.access_token)
            connection = await self._save_connection(user_id, tenant_id, provider_id, tokens, user_info)
        except Exception as exc:
            logger.warning("OAuth2 callback failed for provider %s (tenant %s): %s", provider_id, tenant_id, exc)
            await self.events.emit(
                "auth:failed",
                {"provider_id": provider_id, "user_id": user_id, "tenant_id": tenant_id, "error": str(exc)},
            )
            raise

        logger.info("OAuth2 connected: tenant=%s user=%s provider=%s", tenant_id, user_id, provider_id)
        await self.events.emit(
            "auth:completed",
            {
                "connection_id": connection.id,
                "provider_id": provider_id,
                "user_id": user_id,
                "tenant_id": tenant_id,
            },
        )
        return connection

    async def _exchange_code(self, provider: OAuth2Provider, code: str) -> OAuth2Token:
        try:
            resp = await self._http.post(
                provider.token_url,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": provider.redirect_uri,
                    "client_id": provider.client_id,
                    "client_secret": provider.client_secret,
                },
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            token_data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TokenExchangeError(f"Token exchange failed at {provider.name}: {type(exc).__name__}") from exc

        if "error" in token_data or "access_token" not in token_data:
            raise TokenExchangeError(
                f"Token exchange failed at {provider.name}: {token_data.get('error', 'no access_token')}"
            )
        try:
            return self._token_from_response(token_data, default_scope=" ".join(provider.scopes))
        except (TypeError, ValueError) as exc:
            raise TokenExchangeError(
                f"Token exchange failed at {provider.name}: malformed token response ({type(exc).__name__})"
            ) from exc

    @staticmethod
    def _token_from_response(
        token_data: Dict[str, Any],
        *,
        default_scope: str,
        previous_refresh_token: Optional[str] = None,
    ) -> OAuth2Token:
        expires_in = int(token_data.get("expires_in") or config.default_token_expires_in)
        return OAuth2Token(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or previous_refresh_token,
            token_type=token_data.get("token_type") or "Bearer",
            expires_in=expires_in,
            expires_at=_utcnow() + timedelta(seconds=expires_in),
            scope=token_data.get("scope") or default_scope,
        )

    async def _fetch_user_info(self, provider: OAuth2Provider, access_token: str) -> Optional[Dict[str, Any]]:
        profile = self._profiles.get(provider.name)
        if profile is None:
            return None
        try:
            return await profile.fetch_user_info(self._http, access_token)
        except Exception:
            logger.warning("User info lookup failed for provider %s", provider.name, exc_info=True)
            return None

    async def _save_connection(
        self,
        user_id: str,
        tenant_id: str,
        provider_id: str,
        tokens: OAuth2Token,
        user_info: Optional[Dict[str, Any]],
    ) -> OAuth2Connection:
        row = await self._store.create_oauth2_connection(
            {
                "user_id": user_id,
                "tenant_id": tenant_id,
                "provider_id": provider_id,
                "access_token": self._cipher.encrypt_to_string(tokens.access_token),
                "refresh_token": self._cipher.encrypt_optional(tokens.refresh_token),
                "token_type": tokens.token_type,
                "expires_at": tokens.expires_at,
                "scope": tokens.scope,
                "user_info": user_info,
                "is_active": True,
            }
        )
        return OAuth2Connection(
            id=row.id,
            user_id=user_id,
            tenant_id=tenant_id,
            provider_id=provider_id,
            tokens=tokens,
            user_info=user_info,
            is_active=True,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )

    # ── Tokens ──────────────────────────────────────────────────────────

    def _refresh_lock(self, tenant_id: str, connection_id: str) -> asyncio.Lock:
        return self._refresh_locks.setdefault((tenant_id, connection_id), asyncio.Lock())

    async def refresh_token(self, connection_id: str, tenant_id: str) -> OAuth2Token:
        async with self._refresh_lock(tenant_id, connection_id):
            return await self._refresh(connection_id, tenant_id)

    async def _refresh(self, connection_id: str, tenant_id: str) -> OAuth2Token:
        row = await self._store.get_oauth2_connection(tenant_id, connection_id)
        if row is None:
            raise ConnectionNotFoundError(connection_id, tenant_id)
        refresh_token = self._cipher.decrypt_optional(row.refresh_token)
        if not refresh_token:
            raise TokenRefreshError(f"No refresh token available for connection '{connection_id}'")
        provider = await self.get_provider(row.provider_id, tenant_id)

        try:
            resp = await self._http.post(
                provider.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": provider.client_id,
                    "client_secret": provider.client_secret,
                },
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            token_data = resp.json()
            if "access_token" not in token_data:
                raise TokenRefreshError(
                    f"Token refresh rejected by {provider.name}: {token_data.get('error', 'no access_token')}"
                )
            tokens = self._token_from_response(
                token_data, default_scope=row.scope or "", previous_refresh_token=refresh_token
            )
        except (httpx.HTTPError, TypeError, ValueError, TokenRefreshError) as exc:
            logger.warning("Token refresh failed for connection %s: %s", connection_id, exc)
            await self.events.emit(
                "token:refresh_failed",
                {
                    "connection_id": connection_id,
                    "provider_id": row.provider_id,
                    "tenant_id": tenant_id,
                    "error": str(exc),
                },
            )
            if isinstance(exc, TokenRefreshError):
                raise
            raise TokenRefreshError(f"Token refresh failed at {provider.name}: {type(exc).__name__}") from exc

        await self._store.update_oauth2_connection(
            tenant_id,
            connection_id,
            {
                "access_token": self._cipher.encrypt_to_string(tokens.access_token),
                "refresh_token": self._cipher.encrypt_optional(tokens.refresh_token),
                "token_type": tokens.token_type,
                "expires_at": tokens.expires_at,
                "scope": tokens.scope,
            },
        )

        logger.info("Refreshed OAuth2 token for connection %s", connection_id)
        await self.events.emit(
            "token:refreshed",
            {"connection_id": connection_id, "provider_id": row.provider_id, "tenant_id": tenant_id},
        )
        return tokens

    @staticmethod
    def is_token_expired(connection: OAuth2Connection, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= ensure_utc(connection.tokens.expires_at)

    async def get_valid_access_token(self, connection_id: str, tenant_id: str) -> str:
        """
        Return a usable access token, refreshing once if it has expired.

        Concurrent callers for one connection share a single refresh: the
        expiry is re-checked after the refresh lock is taken.
        """
        connection = await self.get_connection(connection_id, tenant_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id, tenant_id)
        if not self.is_token_expired(connection):
            return connection.tokens.access_token

        async with self._refresh_lock(tenant_id, connection_id):
            connection = await self.get_connection(connection_id, tenant_id)
            if connection is None:
                raise ConnectionNotFoundError(connection_id, tenant_id)
            if not self.is_token_expired(connection):
                return connection.tokens.access_token
            tokens = await self._refresh(connection_id, tenant_id)
        return tokens.access_token

    # ── Connections ─────────────────────────────────────────────────────

    def _connection_from_row(self, row: OAuth2ConnectionRecord) -> OAuth2Connection:
        expires_at = ensure_utc(row.expires_at)
        return OAuth2Connection(
            id=row.id,
            user_id=row.user_id,
            tenant_id=row.tenant_id,
            provider_id=row.provider_id,
            tokens=OAuth2Token(
                access_token=self._cipher.decrypt_from_string(row.access_token),
                refresh_token=self._cipher.decrypt_optional(row.refresh_token),
                token_type=row.token_type or "Bearer",
                expires_in=max(0, int((expires_at - _utcnow()).total_seconds())),
                expires_at=expires_at,
                scope=row.scope or "",
            ),
            user_info=row.user_info,
            is_active=row.is_active,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )

    async def get_connection(self, connection_id: str, tenant_id: str) -> Optional[OAuth2Connection]:
        row = await self._store.get_oauth2_connection(tenant_id, connection_id)
        return self._connection_from_row(row) if row is not None else None

    async def get_user_connections(self, user_id: str, tenant_id: str) -> List[OAuth2Connection]:
        rows = await self._store.list_oauth2_connections(tenant_id, user_id)
        return [self._connection_from_row(row) for row in rows]

    async def revoke_connection(self, connection_id: str, tenant_id: str) -> None:
        """
        Revoke at the provider when its profile supports it, then delete locally.

        Remote revocation is best-effort: a failure is logged and the local
        connection is deleted regardless.
        """
        row = await self._store.get_oauth2_connection(tenant_id, connection_id)
        if row is None:
            raise ConnectionNotFoundError(connection_id, tenant_id)

        try:
            provider = await self.get_provider(row.provider_id, tenant_id)
        except ProviderNotFoundError:
            provider = None
        profile = self._profiles.get(provider.name) if provider else None
        if provider is not None and profile is not None and profile.supports_revocation:
            try:
                access_token = self._cipher.decrypt_from_string(row.access_token)
                revoked = await profile.revoke_token(self._http, provider, access_token)
                if not revoked:
                    logger.warning("Provider %s did not confirm revocation of connection %s", provider.name, connection_id)
            except Exception:
                logger.warning("Remote revocation failed for connection %s", connection_id, exc_info=True)

        await self._store.delete_oauth2_connection(tenant_id, connection_id)
        self._refresh_locks.pop((tenant_id, connection_id), None)

        logger.info("Revoked OAuth2 connection %s for tenant %s", connection_id, tenant_id)
        await self.events.emit(
            "connection:revoked",
            {"connection_id": connection_id, "provider_id": row.provider_id, "tenant_id": tenant_id},
        )

    # ── Housekeeping ────────────────────────────────────────────────────

    async def sweep_expired(self) -> int:
        return await self.pending.sweep_expired()

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired()
            except Exception:
                logger.warning("Pending authorization sweep failed", exc_info=True)

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        seconds = interval if interval is not None else config.pending_sweep_interval_seconds
        self._sweeper = asyncio.create_task(self._sweep_loop(seconds))
        logger.info("Pending authorization sweeper started (every %ss)", seconds)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def close(self) -> None:
        await self.stop_sweeper()
        await self._http.aclose()
