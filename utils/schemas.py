"""
Pydantic schemas for the integration gateway.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator

from config.settings import config


# ═══════════════════════════════════════════════════════════════════════════════
# Authentication variants
# ═══════════════════════════════════════════════════════════════════════════════


class NoAuthConfig(BaseModel):
    type: Literal["none"] = "none"


class ApiKeyAuthConfig(BaseModel):
    """Sent as ``header_name`` when set, otherwise as query param ``param_name``."""

    type: Literal["api_key"] = "api_key"
    api_key: str = Field(..., min_length=1, repr=False)
    header_name: Optional[str] = None
    param_name: str = "api_key"


class BearerAuthConfig(BaseModel):
    type: Literal["bearer"] = "bearer"
    token: str = Field(..., min_length=1, repr=False)


class OAuth2AuthConfig(BaseModel):
    type: Literal["oauth2"] = "oauth2"
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1, repr=False)
    access_token: Optional[str] = Field(None, repr=False)
    refresh_token: Optional[str] = Field(None, repr=False)
    token_url: Optional[str] = None
    expires_at: Optional[datetime] = None


class BasicAuthConfig(BaseModel):
    type: Literal["basic"] = "basic"
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, repr=False)


AuthConfig = Annotated[
    Union[NoAuthConfig, ApiKeyAuthConfig, BearerAuthConfig, OAuth2AuthConfig, BasicAuthConfig],
    Field(discriminator="type"),
]


# ═══════════════════════════════════════════════════════════════════════════════
# Policies
# ═══════════════════════════════════════════════════════════════════════════════


class RateLimitPolicy(BaseModel):
    requests_per_second: int = Field(10, gt=0)
    requests_per_minute: int = Field(600, gt=0)
    requests_per_hour: int = Field(36000, gt=0)
    burst_limit: int = Field(20, gt=0)


class RetryPolicy(BaseModel):
    max_retries: int = Field(default_factory=lambda: config.default_max_retries, ge=0)
    backoff_multiplier: float = Field(default_factory=lambda: config.default_backoff_multiplier, ge=1.0)
    max_backoff_ms: int = Field(default_factory=lambda: config.default_max_backoff_ms, gt=0)
    retryable_status_codes: List[int] = Field(
        default_factory=lambda: list(config.default_retryable_status_codes)
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Connections
# ═══════════════════════════════════════════════════════════════════════════════


def _check_base_url(value: str) -> str:
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError("Invalid base URL")
    return value


class ConnectionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: str = "rest"
    base_url: str
    authentication: AuthConfig = Field(default_factory=NoAuthConfig)
    headers: Dict[str, str] = Field(default_factory=dict)
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    retry_config: RetryPolicy = Field(default_factory=RetryPolicy)
    is_active: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("base_url")
    @classmethod
    def _valid_base_url(cls, value: str) -> str:
        return _check_base_url(value)


class ConnectionUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[str] = None
    base_url: Optional[str] = None
    authentication: Optional[AuthConfig] = None
    headers: Optional[Dict[str, str]] = None
    rate_limit: Optional[RateLimitPolicy] = None
    retry_config: Optional[RetryPolicy] = None
    is_active: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("base_url")
    @classmethod
    def _valid_base_url(cls, value: Optional[str]) -> Optional[str]:
        return value if value is None else _check_base_url(value)


class ApiConnection(ConnectionCreate):
    """Decrypted, in-memory view of a stored connection."""

    id: str
    tenant_id: str


class ConnectionPublic(BaseModel):
    """Connection as exposed over HTTP — auth kind only, never credentials."""

    id: str
    tenant_id: str
    name: str
    type: str
    base_url: str
    auth_type: str
    headers: Dict[str, str]
    rate_limit: RateLimitPolicy
    retry_config: RetryPolicy
    is_active: bool
    metadata: Dict[str, Any]

    @classmethod
    def from_connection(cls, conn: ApiConnection) -> "ConnectionPublic":
        return cls(
            id=conn.id,
            tenant_id=conn.tenant_id,
            name=conn.name,
            type=conn.type,
            base_url=conn.base_url,
            auth_type=conn.authentication.type,
            headers=conn.headers,
            rate_limit=conn.rate_limit,
            retry_config=conn.retry_config,
            is_active=conn.is_active,
            metadata=conn.metadata,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Requests through a connection
# ═══════════════════════════════════════════════════════════════════════════════


class ApiRequest(BaseModel):
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    endpoint: str
    data: Any = None
    params: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(None, gt=0, description="Seconds")


class ApiResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: int
    headers: Dict[str, str] = Field(default_factory=dict)
    duration: int = Field(0, description="Milliseconds")


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth2
# ═══════════════════════════════════════════════════════════════════════════════


class OAuth2ProviderCreate(BaseModel):
    name: str = Field(..., min_length=1)
    auth_url: str
    token_url: str
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1, repr=False)
    scopes: List[str] = Field(default_factory=list)
    redirect_uri: str
    is_active: bool = True

    @field_validator("auth_url", "token_url", "redirect_uri")
    @classmethod
    def _valid_url(cls, value: str) -> str:
        return _check_base_url(value)


class OAuth2Provider(OAuth2ProviderCreate):
    id: str
    tenant_id: str


class OAuth2Token(BaseModel):
    access_token: str = Field(..., repr=False)
    refresh_token: Optional[str] = Field(None, repr=False)
    token_type: str = "Bearer"
    expires_in: int = 0
    expires_at: datetime
    scope: str = ""


class OAuth2Connection(BaseModel):
    id: str
    user_id: str
    tenant_id: str
    provider_id: str
    tokens: OAuth2Token
    user_info: Optional[Dict[str, Any]] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OAuth2ConnectionPublic(BaseModel):
    """OAuth2 connection without tokens."""

    id: str
    user_id: str
    tenant_id: str
    provider_id: str
    token_type: str
    scope: str
    expires_at: datetime
    user_info: Optional[Dict[str, Any]] = None
    is_active: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_connection(cls, conn: OAuth2Connection) -> "OAuth2ConnectionPublic":
        return cls(
            id=conn.id,
            user_id=conn.user_id,
            tenant_id=conn.tenant_id,
            provider_id=conn.provider_id,
            token_type=conn.tokens.token_type,
            scope=conn.tokens.scope,
            expires_at=conn.tokens.expires_at,
            user_info=conn.user_info,
            is_active=conn.is_active,
            created_at=conn.created_at,
        )
