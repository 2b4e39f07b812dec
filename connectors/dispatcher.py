"""
RetryDispatcher — send one logical request with exponential-backoff retries.

Retries happen only for transport failures (no response, including
timeouts) and for responses whose status is in the policy's retryable set.
Anything else fails on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from config.settings import config
from connectors.errors import DispatchError, TransportError, UpstreamStatusError, ValidationError
from utils.schemas import ApiRequest, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptRecord:
    attempt: int
    method: str
    endpoint: str
    status_code: int
    duration_ms: int
    error: Optional[str] = None


AttemptCallback = Callable[[AttemptRecord], Awaitable[None]]


def _request_kwargs(request: ApiRequest, timeout: float) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "method": request.method,
        "url": request.endpoint,
        "params": request.params or None,
        "headers": request.headers or None,
        "timeout": timeout,
    }
    if isinstance(request.data, (str, bytes)):
        kwargs["content"] = request.data
    elif request.data is not None:
        kwargs["json"] = request.data
    return kwargs


def _check_origin(client: httpx.AsyncClient, request: ApiRequest) -> None:
    """Absolute endpoints must stay on the connection's scheme, host and port."""
    url = httpx.URL(request.endpoint)
    if not url.is_absolute_url:
        return
    base = client.base_url
    if (url.scheme, url.host, url.port) != (base.scheme, base.host, base.port):
        raise ValidationError(f"Endpoint {url.scheme}://{url.host} is outside the connection's base URL")


class RetryDispatcher:
    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        initial_backoff_ms: Optional[int] = None,
    ) -> None:
        self._sleep = sleep
        self._initial_backoff_ms = config.initial_backoff_ms if initial_backoff_ms is None else initial_backoff_ms

    async def execute(
        self,
        client: httpx.AsyncClient,
        request: ApiRequest,
        policy: RetryPolicy,
        *,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> httpx.Response:
        """
        Return the first successful response, or raise the last failure.

        Raises
        ------
        UpstreamStatusError – error status (non-retryable, or retries exhausted)
        TransportError      – no response (retries exhausted)
        ValidationError     – absolute endpoint on another origin (nothing is sent)
        """
        _check_origin(client, request)
        timeout = request.timeout or config.default_request_timeout_seconds
        kwargs = _request_kwargs(request, timeout)
        retryable = set(policy.retryable_status_codes)
        backoff_ms = float(self._initial_backoff_ms)
        last_error: Optional[DispatchError] = None

        for attempt in range(policy.max_retries + 1):
            start = time.perf_counter()
            try:
                response = await client.request(**kwargs)
            except httpx.TransportError as exc:
                last_error = TransportError(
                    f"{type(exc).__name__} calling {request.method} {request.endpoint}", cause=exc
                )
                await self._record(on_attempt, attempt, request, 0, start, str(last_error))
            else:
                if response.status_code < 400:
                    await self._record(on_attempt, attempt, request, response.status_code, start)
                    return response
                last_error = UpstreamStatusError(response)
                await self._record(on_attempt, attempt, request, response.status_code, start, str(last_error))
                if response.status_code not in retryable:
                    raise last_error

            if attempt == policy.max_retries:
                break

            delay_ms = min(backoff_ms, policy.max_backoff_ms)
            logger.warning(
                "%s %s attempt %d/%d failed (%s); retrying in %dms",
                request.method,
                request.endpoint,
                attempt + 1,
                policy.max_retries + 1,
                last_error,
                delay_ms,
            )
            await self._sleep(delay_ms / 1000)
            backoff_ms *= policy.backoff_multiplier

        raise last_error

    @staticmethod
    async def _record(
        on_attempt: Optional[AttemptCallback],
        attempt: int,
        request: ApiRequest,
        status_code: int,
        start: float,
        error: Optional[str] = None,
    ) -> None:
        if on_attempt is None:
            return
        record = AttemptRecord(
            attempt=attempt + 1,
            method=request.method,
            endpoint=request.endpoint,
            status_code=status_code,
            duration_ms=int((time.perf_counter() - start) * 1000),
            error=error,
        )
        try:
            await on_attempt(record)
        except Exception:
            logger.warning("Attempt callback failed for %s %s", request.method, request.endpoint, exc_info=True)
