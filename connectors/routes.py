"""
Integration API routes — connections, proxied requests, OAuth2 flow.

Route prefix: /api/v1/integrations
"""

from __future__ import annotations

import html
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse

from api.dependencies import get_api_connector, get_oauth2_manager, get_tenant_id, get_user_id
from connectors.api_connector import ApiConnector
from connectors.errors import OAuth2Error
from connectors.oauth2_manager import OAuth2Manager
from connectors.registry import ProviderProfileRegistry
from utils.schemas import (
    ApiRequest,
    ApiResponse,
    ConnectionCreate,
    ConnectionPublic,
    ConnectionUpdate,
    OAuth2ConnectionPublic,
    OAuth2ProviderCreate,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


# ── API connections ────────────────────────────────────────────────────


@router.post("/connections", status_code=status.HTTP_201_CREATED)
async def create_connection(
    body: ConnectionCreate,
    tenant_id: str = Depends(get_tenant_id),
    connector: ApiConnector = Depends(get_api_connector),
) -> Dict[str, str]:
    connection_id = await connector.create_connection(tenant_id, body)
    return {"id": connection_id}


@router.get("/connections", response_model=List[ConnectionPublic])
async def list_connections(
    tenant_id: str = Depends(get_tenant_id),
    connector: ApiConnector = Depends(get_api_connector),
) -> List[ConnectionPublic]:
    return [ConnectionPublic.from_connection(c) for c in await connector.list_connections(tenant_id)]


@router.get("/connections/{connection_id}", response_model=ConnectionPublic)
async def get_connection(
    connection_id: str,
    tenant_id: str = Depends(get_tenant_id),
    connector: ApiConnector = Depends(get_api_connector),
) -> ConnectionPublic:
    connection = await connector.get_connection(connection_id, tenant_id)
    if connection is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Connection not found")
    return ConnectionPublic.from_connection(connection)


@router.patch("/connections/{connection_id}", response_model=ConnectionPublic)
async def update_connection(
    connection_id: str,
    body: ConnectionUpdate,
    tenant_id: str = Depends(get_tenant_id),
    connector: ApiConnector = Depends(get_api_connector),
) -> ConnectionPublic:
    connection = await connector.update_connection(connection_id, tenant_id, body)
    return ConnectionPublic.from_connection(connection)


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    tenant_id: str = Depends(get_tenant_id),
    connector: ApiConnector = Depends(get_api_connector),
) -> Dict[str, Any]:
    if not await connector.delete_connection(connection_id, tenant_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Connection not found")
    return {"status": "deleted", "connection_id": connection_id}


@router.post("/connections/{connection_id}/request", response_model=ApiResponse)
async def make_request(
    connection_id: str,
    body: ApiRequest,
    tenant_id: str = Depends(get_tenant_id),
    connector: ApiConnector = Depends(get_api_connector),
) -> ApiResponse:
    """Proxy one request through the connection.  Upstream failures come back in the body."""
    return await connector.make_request(connection_id, body, tenant_id)


@router.post("/connections/{connection_id}/test")
async def test_connection(
    connection_id: str,
    tenant_id: str = Depends(get_tenant_id),
    connector: ApiConnector = Depends(get_api_connector),
) -> Dict[str, Any]:
    return {"connection_id": connection_id, "success": await connector.test_connection(connection_id, tenant_id)}


# ── OAuth2 providers ───────────────────────────────────────────────────


@router.get("/oauth2/profiles")
async def list_profiles() -> List[Dict[str, Any]]:
    """Providers with built-in user-info / revocation support."""
    return ProviderProfileRegistry().list_profiles()


@router.post("/oauth2/providers", status_code=status.HTTP_201_CREATED)
async def register_provider(
    body: OAuth2ProviderCreate,
    tenant_id: str = Depends(get_tenant_id),
    manager: OAuth2Manager = Depends(get_oauth2_manager),
) -> Dict[str, str]:
    provider_id = await manager.register_provider(tenant_id, body)
    return {"id": provider_id}


@router.get("/oauth2/providers/{provider_id}/auth-url")
async def get_auth_url(
    provider_id: str,
    tenant_id: str = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    manager: OAuth2Manager = Depends(get_oauth2_manager),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a provider.

    Frontend should open this URL in a popup window.
    """
    auth_url = await manager.generate_auth_url(provider_id, user_id, tenant_id)
    return {"auth_url": auth_url, "provider_id": provider_id}


@router.get("/oauth2/callback")
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: str = Query(...),
    error: Optional[str] = Query(None),
    manager: OAuth2Manager = Depends(get_oauth2_manager),
) -> HTMLResponse:
    """
    Provider redirect target.  Completes the flow and returns a small HTML
    page that notifies the opener window and auto-closes.
    """
    try:
        if not error and not code:
            raise OAuth2Error("Callback is missing the authorization code")
        connection = await manager.handle_callback(code or "", state, error)
    except OAuth2Error as exc:
        logger.warning("OAuth callback rejected: %s", exc)
        return HTMLResponse(
            content=_callback_html(success=False, message=str(exc)),
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    label = (connection.user_info or {}).get("email") or (connection.user_info or {}).get("login") or "account"
    return HTMLResponse(
        content=_callback_html(success=True, message=f"Connected {label}", connection_id=connection.id),
        status_code=status.HTTP_200_OK,
    )


# ── OAuth2 connections ─────────────────────────────────────────────────


@router.get("/oauth2/connections", response_model=List[OAuth2ConnectionPublic])
async def list_oauth2_connections(
    tenant_id: str = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    manager: OAuth2Manager = Depends(get_oauth2_manager),
) -> List[OAuth2ConnectionPublic]:
    return [
        OAuth2ConnectionPublic.from_connection(c)
        for c in await manager.get_user_connections(user_id, tenant_id)
    ]


@router.post("/oauth2/connections/{connection_id}/refresh")
async def refresh_oauth2_token(
    connection_id: str,
    tenant_id: str = Depends(get_tenant_id),
    manager: OAuth2Manager = Depends(get_oauth2_manager),
) -> Dict[str, Any]:
    tokens = await manager.refresh_token(connection_id, tenant_id)
    return {
        "connection_id": connection_id,
        "token_type": tokens.token_type,
        "expires_at": tokens.expires_at.isoformat(),
        "scope": tokens.scope,
    }


@router.get("/oauth2/connections/{connection_id}/access-token")
async def get_access_token(
    connection_id: str,
    tenant_id: str = Depends(get_tenant_id),
    manager: OAuth2Manager = Depends(get_oauth2_manager),
) -> Dict[str, str]:
    """Current access token, refreshed first if it has expired."""
    return {"access_token": await manager.get_valid_access_token(connection_id, tenant_id)}


@router.delete("/oauth2/connections/{connection_id}")
async def revoke_oauth2_connection(
    connection_id: str,
    tenant_id: str = Depends(get_tenant_id),
    manager: OAuth2Manager = Depends(get_oauth2_manager),
) -> Dict[str, Any]:
    """Revoke (best-effort) and delete an OAuth2 connection."""
    await manager.revoke_connection(connection_id, tenant_id)
    return {"status": "revoked", "connection_id": connection_id}


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, connection_id: str = "") -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    safe_message = html.escape(message)

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Integration {status_text}</title>
    <style>
        body {{
            font-family: system-ui, sans-serif;
            background: #0b0d11; color: #e4e7ee;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #12151b; border: 1px solid #1f2330;
            border-radius: 12px; max-width: 400px;
        }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        p {{ color: #a0a6b8; font-size: 0.85rem; }}
    </style>
</head>
<body>
    <div class="card">
        <h2>{status_text}</h2>
        <p>{safe_message}</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({{
                type: 'oauth-callback',
                success: {'true' if success else 'false'},
                connectionId: '{html.escape(connection_id)}',
            }}, '*');
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
