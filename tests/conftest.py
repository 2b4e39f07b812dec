"""
Shared fixtures: in-memory store, test cipher, scripted upstream.
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Union

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from connectors.encryption import CredentialCipher
from database.session import build_engine, build_session_factory, create_tables
from database.store import ConnectionStore

TEST_KEY = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode()

CONNECT_ERROR = "connect-error"

Scripted = Union[int, str, httpx.Response, Callable[[httpx.Request], httpx.Response]]


class ScriptedUpstream:
    """
    MockTransport handler that replays a script of responses.

    Items are a status code, ``CONNECT_ERROR``, a ready ``httpx.Response``
    or a callable taking the request.  The last item repeats forever.
    """

    def __init__(self, *script: Scripted) -> None:
        self.script: List[Scripted] = list(script) or [200]
        self.requests: List[httpx.Request] = []
        # Snapshots; auth flows mutate a request in place before resending it.
        self.headers: List[httpx.Headers] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.headers.append(request.headers.copy())
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if item == CONNECT_ERROR:
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(item, int):
            return httpx.Response(item, json={"status": item})
        if callable(item):
            return item(request)
        return item

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def calls(self) -> int:
        return len(self.requests)


class FakeClock:
    """Monotonic-style float clock for the rate limiter."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    """Datetime clock for pending authorizations."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest_asyncio.fixture
async def engine():
    engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine) -> ConnectionStore:
    return ConnectionStore(build_session_factory(engine))


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_KEY)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
