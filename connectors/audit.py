"""
Request-log sink — one row per outbound attempt.

Writes are best-effort: a failed write is logged locally and never
reaches the caller whose request is being recorded.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from database.store import ConnectionStore

logger = logging.getLogger(__name__)


class RequestLogSink:
    def __init__(self, store: ConnectionStore) -> None:
        self._store = store

    async def record(
        self,
        *,
        connection_id: str,
        tenant_id: str,
        method: str,
        endpoint: str,
        status_code: int,
        duration: int,
        error: Optional[str] = None,
        request_data: Any = None,
    ) -> None:
        try:
            await self._store.add_request_log(
                {
                    "connection_id": connection_id,
                    "tenant_id": tenant_id,
                    "method": method,
                    "endpoint": endpoint,
                    "status_code": status_code,
                    "duration": duration,
                    "error": error,
                    "request_data": _serialise(request_data),
                    "created_at": datetime.now(timezone.utc),
                }
            )
        except Exception:
            logger.warning(
                "Failed to write request log for connection %s (tenant %s)",
                connection_id,
                tenant_id,
                exc_info=True,
            )


def _serialise(data: Any) -> Optional[str]:
    if data is None:
        return None
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        return data
    return json.dumps(data, default=str)
