"""
SQLAlchemy ORM models for connections, OAuth2 providers/connections and request logs.

JSON columns use ``JSONB`` on PostgreSQL and plain ``JSON`` elsewhere.
Credential columns hold encrypted envelopes serialised as text.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Connection(Base):
    __tablename__ = "connections"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    type = Column(String(64), nullable=False, default="rest")
    base_url = Column(Text, nullable=False)
    authentication = Column(Text)
    headers = Column(JsonType, default=dict)
    rate_limit = Column(JsonType, default=dict)
    retry_config = Column(JsonType, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    metadata_ = Column("metadata", JsonType, default=dict)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (Index("ix_connections_tenant", "tenant_id"),)


class OAuth2ProviderRecord(Base):
    __tablename__ = "oauth2_providers"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(64), nullable=False)
    name = Column(String(128), nullable=False)
    auth_url = Column(Text, nullable=False)
    token_url = Column(Text, nullable=False)
    client_id = Column(String(512), nullable=False)
    client_secret = Column(Text, nullable=False)
    scopes = Column(JsonType, default=list)
    redirect_uri = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_now)

    connections = relationship("OAuth2ConnectionRecord", back_populates="provider", cascade="all, delete-orphan")

    __table_args__ = (Index("ix_oauth2_providers_tenant", "tenant_id"),)


class OAuth2ConnectionRecord(Base):
    __tablename__ = "oauth2_connections"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False)
    tenant_id = Column(String(64), nullable=False)
    provider_id = Column(String(36), ForeignKey("oauth2_providers.id", ondelete="CASCADE"), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_type = Column(String(32), default="Bearer")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    scope = Column(Text, default="")
    user_info = Column(JsonType)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)

    provider = relationship("OAuth2ProviderRecord", back_populates="connections")

    __table_args__ = (Index("ix_oauth2_connections_tenant_user", "tenant_id", "user_id"),)


class RequestLog(Base):
    __tablename__ = "request_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    connection_id = Column(String(36), nullable=False)
    tenant_id = Column(String(64), nullable=False)
    method = Column(String(8), nullable=False)
    endpoint = Column(Text, nullable=False)
    status_code = Column(Integer, nullable=False, default=0)
    duration = Column(Integer, nullable=False, default=0)
    error = Column(Text)
    request_data = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (Index("ix_request_logs_connection", "tenant_id", "connection_id"),)
