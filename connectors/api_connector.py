"""
ApiConnector — the programmatic surface for tenant API connections.

    create / update / delete / get / list connection
    make_request(connection_id, request, tenant_id) -> ApiResponse
    test_connection(connection_id, tenant_id) -> bool

A request flows: cache lookup → rate limiter → retry dispatcher (auth is
injected per attempt by the connection's client) → request log + event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from config.settings import config
from connectors.audit import RequestLogSink
from connectors.auth import TokenRefresher, build_auth
from connectors.cache import CacheKey, ConnectionCache
from connectors.dispatcher import AttemptRecord, RetryDispatcher
from connectors.encryption import CredentialCipher, is_encrypted
from connectors.errors import (
    ConnectionNotFoundError,
    DispatchError,
    NotFoundError,
    RateLimitExceeded,
    ValidationError,
)
from connectors.events import EventBus
from database.store import ConnectionStore
from utils.schemas import (
    ApiConnection,
    ApiRequest,
    ApiResponse,
    ConnectionCreate,
    ConnectionUpdate,
    OAuth2AuthConfig,
)

logger = logging.getLogger(__name__)

# Fields whose change invalidates the connection's HTTP client.
_CLIENT_FIELDS = {"base_url", "headers", "authentication"}


def _response_data(response: httpx.Response) -> Any:
    if not response.content:
        return None
    if "json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class ApiConnector:
    def __init__(
        self,
        store: ConnectionStore,
        cipher: CredentialCipher,
        *,
        events: Optional[EventBus] = None,
        dispatcher: Optional[RetryDispatcher] = None,
        log_sink: Optional[RequestLogSink] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self.events = events if events is not None else EventBus()
        self._dispatcher = dispatcher if dispatcher is not None else RetryDispatcher()
        self._log_sink = log_sink if log_sink is not None else RequestLogSink(store)
        self._transport = transport
        self._http = httpx.AsyncClient(timeout=config.default_request_timeout_seconds, transport=transport)
        self._refresh_locks: Dict[CacheKey, asyncio.Lock] = {}
        self.cache = ConnectionCache(store, cipher, client_factory=self._build_client)

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def load(self) -> int:
        return await self.cache.populate()

    async def close(self) -> None:
        await self.cache.close()
        await self._http.aclose()

    # ── CRUD ────────────────────────────────────────────────────────────

    async def create_connection(
        self, tenant_id: str, data: Union[ConnectionCreate, Dict[str, Any]]
    ) -> str:
        """Validate, encrypt, persist and cache a new connection.  Returns its id."""
        self._cipher.require_key("ApiConnector")
        payload = self._validate(ConnectionCreate, data)

        row = await self._store.create_connection(
            tenant_id,
            {
                "name": payload.name,
                "type": payload.type,
                "base_url": payload.base_url,
                "authentication": self._cipher.encrypt_to_string(
                    payload.authentication.model_dump(mode="json")
                ),
                "headers": payload.headers,
                "rate_limit": payload.rate_limit.model_dump(),
                "retry_config": payload.retry_config.model_dump(),
                "is_active": payload.is_active,
                "metadata_": payload.metadata,
            },
        )
        connection = ApiConnection(id=row.id, tenant_id=tenant_id, **payload.model_dump())
        await self.cache.put(connection)

        logger.info("Created %s connection %s for tenant %s", payload.authentication.type, row.id, tenant_id)
        await self.events.emit(
            "connection:created",
            {"connection_id": row.id, "tenant_id": tenant_id, "type": payload.type},
        )
        return row.id

    async def update_connection(
        self,
        connection_id: str,
        tenant_id: str,
        updates: Union[ConnectionUpdate, Dict[str, Any]],
    ) -> ApiConnection:
        changes = self._validate(ConnectionUpdate, updates)
        changed = {name for name in changes.model_fields_set if getattr(changes, name) is not None}

        row = await self._store.get_connection(tenant_id, connection_id)
        if row is None:
            raise ConnectionNotFoundError(connection_id, tenant_id)
        current = await self.cache.get(tenant_id, connection_id) or await self.cache.load_row(row)

        values: Dict[str, Any] = {}
        for name in changed - {"authentication", "metadata", "rate_limit", "retry_config"}:
            values[name] = getattr(changes, name)
        if "metadata" in changed:
            values["metadata_"] = changes.metadata
        if "rate_limit" in changed:
            values["rate_limit"] = changes.rate_limit.model_dump()
        if "retry_config" in changed:
            values["retry_config"] = changes.retry_config.model_dump()

        auth = current.authentication
        if "authentication" in changed:
            auth = changes.authentication
            values["authentication"] = self._encrypt_auth(auth)
        elif row.authentication and not is_encrypted(row.authentication):
            values["authentication"] = self._encrypt_auth(auth)

        merged = current.model_copy(
            update={**{name: getattr(changes, name) for name in changed}, "authentication": auth}
        )
        await self._store.update_connection(tenant_id, connection_id, values)
        await self.cache.apply_update(
            merged,
            rebuild_client=bool(changed & _CLIENT_FIELDS),
            rebuild_limiter="rate_limit" in changed,
        )

        logger.info("Updated connection %s for tenant %s (%s)", connection_id, tenant_id, ", ".join(sorted(changed)))
        await self.events.emit(
            "connection:updated",
            {"connection_id": connection_id, "tenant_id": tenant_id, "fields": sorted(changed)},
        )
        return merged

    async def delete_connection(self, connection_id: str, tenant_id: str) -> bool:
        deleted = await self._store.delete_connection(tenant_id, connection_id)
        await self.cache.invalidate(tenant_id, connection_id)
        self._refresh_locks.pop((tenant_id, connection_id), None)
        if deleted:
            logger.info("Deleted connection %s for tenant %s", connection_id, tenant_id)
            await self.events.emit("connection:deleted", {"connection_id": connection_id, "tenant_id": tenant_id})
        return deleted

    async def get_connection(self, connection_id: str, tenant_id: str) -> Optional[ApiConnection]:
        return await self.cache.get(tenant_id, connection_id)

    async def list_connections(self, tenant_id: str) -> List[ApiConnection]:
        return [await self.cache.load_row(row) for row in await self._store.list_connections(tenant_id)]

    # ── Requests ────────────────────────────────────────────────────────

    async def make_request(
        self,
        connection_id: str,
        request: Union[ApiRequest, Dict[str, Any]],
        tenant_id: str,
    ) -> ApiResponse:
        """
        Send *request* through the connection.  Gateway failures come back as
        ``success=False``; credential decryption failures are raised.
        """
        request = self._validate(ApiRequest, request)
        start = time.perf_counter()

        async def _log_attempt(record: AttemptRecord) -> None:
            await self._log_sink.record(
                connection_id=connection_id,
                tenant_id=tenant_id,
                method=record.method,
                endpoint=record.endpoint,
                status_code=record.status_code,
                duration=record.duration_ms,
                error=record.error,
                request_data=request.data,
            )

        try:
            entry = await self.cache.get_entry(tenant_id, connection_id)
            if entry is None or not entry.connection.is_active:
                raise ConnectionNotFoundError(connection_id, tenant_id)
            entry.limiter.check_limit()
            response = await self._dispatcher.execute(
                entry.client, request, entry.connection.retry_config, on_attempt=_log_attempt
            )
        except (NotFoundError, RateLimitExceeded, DispatchError) as exc:
            duration = int((time.perf_counter() - start) * 1000)
            status_code = exc.status_code if isinstance(exc, DispatchError) and exc.status_code else 0
            if isinstance(exc, RateLimitExceeded):
                status_code = 429
            if not isinstance(exc, DispatchError):
                # Dispatch failures were already logged per attempt.
                await _log_attempt(
                    AttemptRecord(1, request.method, request.endpoint, status_code, duration, str(exc))
                )
            upstream = exc.response if isinstance(exc, DispatchError) else None
            result = ApiResponse(
                success=False,
                error=str(exc),
                data=_response_data(upstream) if upstream is not None else None,
                status_code=status_code,
                headers=dict(upstream.headers) if upstream is not None else {},
                duration=duration,
            )
            await self.events.emit(
                "request:error",
                {
                    "connection_id": connection_id,
                    "tenant_id": tenant_id,
                    "method": request.method,
                    "endpoint": request.endpoint,
                    "status_code": status_code,
                    "error": str(exc),
                },
            )
            return result

        result = ApiResponse(
            success=True,
            data=_response_data(response),
            status_code=response.status_code,
            headers=dict(response.headers),
            duration=int((time.perf_counter() - start) * 1000),
        )
        await self.events.emit(
            "request:success",
            {
                "connection_id": connection_id,
                "tenant_id": tenant_id,
                "method": request.method,
                "endpoint": request.endpoint,
                "status_code": response.status_code,
            },
        )
        return result

    async def test_connection(self, connection_id: str, tenant_id: str) -> bool:
        if await self.get_connection(connection_id, tenant_id) is None:
            return False
        response = await self.make_request(
            connection_id, ApiRequest(method="GET", endpoint=config.test_connection_endpoint), tenant_id
        )
        return response.success and response.status_code < 400

    # ── Internals ───────────────────────────────────────────────────────

    @staticmethod
    def _validate(model, data):
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise ValidationError(f"Invalid {model.__name__}: {fields}") from None

    def _encrypt_auth(self, auth) -> str:
        self._cipher.require_key("ApiConnector")
        return self._cipher.encrypt_to_string(auth.model_dump(mode="json"))

    def _build_client(self, connection: ApiConnection) -> httpx.AsyncClient:
        refresher = None
        if isinstance(connection.authentication, OAuth2AuthConfig):
            refresher = self._make_refresher(connection.tenant_id, connection.id, connection.authentication)
        return httpx.AsyncClient(
            base_url=connection.base_url,
            headers=connection.headers,
            auth=build_auth(connection.authentication, refresher),
            timeout=config.default_request_timeout_seconds,
            transport=self._transport,
        )

    def _make_refresher(self, tenant_id: str, connection_id: str, auth: OAuth2AuthConfig) -> TokenRefresher:
        key = (tenant_id, connection_id)

        async def _refresh(rejected: Optional[str]) -> Optional[str]:
            async with self._refresh_locks.setdefault(key, asyncio.Lock()):
                if auth.access_token and auth.access_token != rejected:
                    return auth.access_token
                if not (auth.refresh_token and auth.token_url):
                    return None
                try:
                    resp = await self._http.post(
                        auth.token_url,
                        data={
                            "grant_type": "refresh_token",
                            "refresh_token": auth.refresh_token,
                            "client_id": auth.client_id,
                            "client_secret": auth.client_secret,
                        },
                        headers={"Accept": "application/json"},
                    )
                    resp.raise_for_status()
                    token_data = resp.json()
                    auth.access_token = token_data["access_token"]
                    auth.refresh_token = token_data.get("refresh_token") or auth.refresh_token
                    auth.expires_at = datetime.now(timezone.utc) + timedelta(
                        seconds=token_data.get("expires_in", config.default_token_expires_in)
                    )
                    await self._store.update_connection(
                        tenant_id, connection_id, {"authentication": self._encrypt_auth(auth)}
                    )
                except Exception:
                    logger.warning("OAuth2 token refresh failed for connection %s", connection_id, exc_info=True)
                    return None
                logger.info("Refreshed OAuth2 token for connection %s", connection_id)
                return auth.access_token

        return _refresh
