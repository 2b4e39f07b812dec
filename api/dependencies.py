"""
FastAPI dependencies (shared across routes).

Tenant and user identity come from the upstream identity layer as
``X-Tenant-ID`` / ``X-User-ID`` headers; the gateway trusts them as given.
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from connectors.api_connector import ApiConnector
from connectors.oauth2_manager import OAuth2Manager


async def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    if not x_tenant_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty X-Tenant-ID header")
    return x_tenant_id


async def get_user_id(x_user_id: str = Header(..., alias="X-User-ID")) -> str:
    if not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty X-User-ID header")
    return x_user_id


def get_api_connector(request: Request) -> ApiConnector:
    return request.app.state.api_connector


def get_oauth2_manager(request: Request) -> OAuth2Manager:
    return request.app.state.oauth2_manager
