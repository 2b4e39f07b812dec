"""
Persistence adapter for connections, OAuth2 providers/connections and request logs.

Every lookup is tenant-scoped: a row owned by another tenant is reported
exactly like a missing row.  Each call runs in its own short session.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Connection, OAuth2ConnectionRecord, OAuth2ProviderRecord, RequestLog

logger = logging.getLogger(__name__)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Backends without timezone support hand back naive datetimes; they are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConnectionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Connections ─────────────────────────────────────────────────────

    async def create_connection(self, tenant_id: str, values: Dict[str, Any]) -> Connection:
        async with self._session_factory() as session:
            row = Connection(tenant_id=tenant_id, **values)
            session.add(row)
            await session.commit()
            return row

    async def get_connection(self, tenant_id: str, connection_id: str) -> Optional[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Connection).where(
                    Connection.id == connection_id,
                    Connection.tenant_id == tenant_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_connections(self, tenant_id: str) -> List[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Connection)
                .where(Connection.tenant_id == tenant_id)
                .order_by(Connection.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_active_connections(self) -> List[Connection]:
        """All tenants — used only to warm the cache at startup."""
        async with self._session_factory() as session:
            result = await session.execute(select(Connection).where(Connection.is_active.is_(True)))
            return list(result.scalars().all())

    async def update_connection(
        self, tenant_id: str, connection_id: str, values: Dict[str, Any]
    ) -> Optional[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Connection).where(
                    Connection.id == connection_id,
                    Connection.tenant_id == tenant_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return row

    async def delete_connection(self, tenant_id: str, connection_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(Connection).where(
                    Connection.id == connection_id,
                    Connection.tenant_id == tenant_id,
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── OAuth2 providers ────────────────────────────────────────────────

    async def create_provider(self, tenant_id: str, values: Dict[str, Any]) -> OAuth2ProviderRecord:
        async with self._session_factory() as session:
            row = OAuth2ProviderRecord(tenant_id=tenant_id, **values)
            session.add(row)
            await session.commit()
            return row

    async def get_provider(self, tenant_id: str, provider_id: str) -> Optional[OAuth2ProviderRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuth2ProviderRecord).where(
                    OAuth2ProviderRecord.id == provider_id,
                    OAuth2ProviderRecord.tenant_id == tenant_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_active_providers(self) -> List[OAuth2ProviderRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuth2ProviderRecord).where(OAuth2ProviderRecord.is_active.is_(True))
            )
            return list(result.scalars().all())

    # ── OAuth2 connections ──────────────────────────────────────────────

    async def create_oauth2_connection(self, values: Dict[str, Any]) -> OAuth2ConnectionRecord:
        async with self._session_factory() as session:
            row = OAuth2ConnectionRecord(**values)
            session.add(row)
            await session.commit()
            return row

    async def get_oauth2_connection(
        self, tenant_id: str, connection_id: str
    ) -> Optional[OAuth2ConnectionRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuth2ConnectionRecord).where(
                    OAuth2ConnectionRecord.id == connection_id,
                    OAuth2ConnectionRecord.tenant_id == tenant_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_oauth2_connections(self, tenant_id: str, user_id: str) -> List[OAuth2ConnectionRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuth2ConnectionRecord)
                .where(
                    OAuth2ConnectionRecord.tenant_id == tenant_id,
                    OAuth2ConnectionRecord.user_id == user_id,
                    OAuth2ConnectionRecord.is_active.is_(True),
                )
                .order_by(OAuth2ConnectionRecord.created_at.desc())
            )
            return list(result.scalars().all())

    async def update_oauth2_connection(
        self, tenant_id: str, connection_id: str, values: Dict[str, Any]
    ) -> Optional[OAuth2ConnectionRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuth2ConnectionRecord).where(
                    OAuth2ConnectionRecord.id == connection_id,
                    OAuth2ConnectionRecord.tenant_id == tenant_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return row

    async def delete_oauth2_connection(self, tenant_id: str, connection_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(OAuth2ConnectionRecord).where(
                    OAuth2ConnectionRecord.id == connection_id,
                    OAuth2ConnectionRecord.tenant_id == tenant_id,
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Request logs ────────────────────────────────────────────────────

    async def add_request_log(self, values: Dict[str, Any]) -> None:
        async with self._session_factory() as session:
            session.add(RequestLog(**values))
            await session.commit()

    async def list_request_logs(self, tenant_id: str, connection_id: str) -> List[RequestLog]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RequestLog)
                .where(
                    RequestLog.tenant_id == tenant_id,
                    RequestLog.connection_id == connection_id,
                )
                .order_by(RequestLog.id)
            )
            return list(result.scalars().all())
