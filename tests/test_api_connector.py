"""
End-to-end tests for the ApiConnector facade (store + cache + limiter + dispatcher).
"""

from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio

from connectors.api_connector import ApiConnector
from connectors.dispatcher import RetryDispatcher
from connectors.encryption import CredentialCipher, is_encrypted
from connectors.errors import ConnectionNotFoundError, EncryptionKeyMissingError, ValidationError
from utils.schemas import ApiRequest, ConnectionCreate

from conftest import ScriptedUpstream

TENANT = "tenant-a"


def _bearer_connection(**overrides) -> dict:
    data = {
        "name": "Orders API",
        "base_url": "https://orders.example.com",
        "authentication": {"type": "bearer", "token": "tok-123"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def upstream() -> ScriptedUpstream:
    return ScriptedUpstream(200)


@pytest_asyncio.fixture
async def connector(store, cipher, sleep, upstream):
    connector = ApiConnector(
        store,
        cipher,
        dispatcher=RetryDispatcher(sleep=sleep),
        transport=upstream.transport,
    )
    yield connector
    await connector.close()


class TestCreate:
    @pytest.mark.asyncio
    async def test_credentials_encrypted_at_rest(self, connector, store):
        connection_id = await connector.create_connection(TENANT, _bearer_connection())

        row = await store.get_connection(TENANT, connection_id)
        assert is_encrypted(row.authentication)
        assert "tok-123" not in row.authentication
        connection = await connector.get_connection(connection_id, TENANT)
        assert connection.authentication.token == "tok-123"

    @pytest.mark.asyncio
    async def test_accepts_model_input(self, connector):
        connection_id = await connector.create_connection(
            TENANT, ConnectionCreate(**_bearer_connection(name="Typed"))
        )
        assert (await connector.get_connection(connection_id, TENANT)).name == "Typed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"base_url": "not a url"},
            {"base_url": "ftp://files.example.com"},
            {"authentication": {"type": "api_key"}},
            {"authentication": {"type": "basic", "username": "u"}},
            {"authentication": {"type": "oauth2", "client_id": "c"}},
            {"rate_limit": {"requests_per_second": 0}},
            {"retry_config": {"backoff_multiplier": 0.5}},
        ],
    )
    async def test_invalid_definitions_rejected(self, connector, store, overrides):
        with pytest.raises(ValidationError):
            await connector.create_connection(TENANT, _bearer_connection(**overrides))
        assert await store.list_connections(TENANT) == []

    @pytest.mark.asyncio
    async def test_refused_without_key(self, store, upstream):
        connector = ApiConnector(store, CredentialCipher(None), transport=upstream.transport)
        with pytest.raises(EncryptionKeyMissingError):
            await connector.create_connection(TENANT, _bearer_connection())
        assert await store.list_connections(TENANT) == []
        await connector.close()


class TestMakeRequest:
    @pytest.mark.asyncio
    async def test_retry_then_success_logs_each_attempt(self, connector, store, upstream):
        upstream.script = [500, httpx.Response(200, json={"items": [1, 2]})]
        connection_id = await connector.create_connection(TENANT, _bearer_connection())

        response = await connector.make_request(connection_id, ApiRequest(endpoint="/items"), TENANT)

        assert response.success
        assert response.status_code == 200
        assert response.data == {"items": [1, 2]}
        assert upstream.calls == 2
        assert all(h["Authorization"] == "Bearer tok-123" for h in upstream.headers)

        logs = await store.list_request_logs(TENANT, connection_id)
        assert [log.status_code for log in logs] == [500, 200]
        assert logs[0].error is not None
        assert logs[1].error is None

    @pytest.mark.asyncio
    async def test_non_retryable_status_returned_as_failure(self, connector, upstream):
        upstream.script = [httpx.Response(404, json={"message": "no such order"})]
        connection_id = await connector.create_connection(TENANT, _bearer_connection())

        response = await connector.make_request(connection_id, {"endpoint": "/orders/9"}, TENANT)

        assert not response.success
        assert response.status_code == 404
        assert response.data == {"message": "no such order"}
        assert "404" in response.error
        assert upstream.calls == 1

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_use_connection(self, connector, upstream):
        connection_id = await connector.create_connection(TENANT, _bearer_connection())

        response = await connector.make_request(connection_id, ApiRequest(endpoint="/items"), "tenant-b")

        assert not response.success
        assert response.status_code == 0
        assert "not found" in response.error
        assert upstream.calls == 0
        assert await connector.get_connection(connection_id, "tenant-b") is None

    @pytest.mark.asyncio
    async def test_inactive_connection_refused(self, connector, upstream):
        connection_id = await connector.create_connection(TENANT, _bearer_connection(is_active=False))
        response = await connector.make_request(connection_id, ApiRequest(endpoint="/items"), TENANT)
        assert not response.success
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_rate_limit_rejection(self, connector, store, upstream):
        connection_id = await connector.create_connection(
            TENANT, _bearer_connection(rate_limit={"requests_per_second": 1})
        )

        first = await connector.make_request(connection_id, ApiRequest(endpoint="/a"), TENANT)
        second = await connector.make_request(connection_id, ApiRequest(endpoint="/b"), TENANT)

        assert first.success
        assert not second.success
        assert second.status_code == 429
        assert upstream.calls == 1
        logs = await store.list_request_logs(TENANT, connection_id)
        assert [log.status_code for log in logs] == [200, 429]

    @pytest.mark.asyncio
    async def test_foreign_host_never_receives_credentials(self, connector, upstream):
        connection_id = await connector.create_connection(TENANT, _bearer_connection())

        with pytest.raises(ValidationError):
            await connector.make_request(
                connection_id, {"endpoint": "https://evil.example.net/steal"}, TENANT
            )
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_api_key_query_param_applied(self, connector, upstream):
        connection_id = await connector.create_connection(
            TENANT, _bearer_connection(authentication={"type": "api_key", "api_key": "k-1"})
        )
        await connector.make_request(connection_id, ApiRequest(endpoint="/items", params={"page": 2}), TENANT)

        sent = upstream.requests[0]
        assert sent.url.params["api_key"] == "k-1"
        assert sent.url.params["page"] == "2"

    @pytest.mark.asyncio
    async def test_events_emitted(self, connector, upstream):
        seen = []
        connector.events.subscribe("*", lambda event, payload: seen.append(event))

        connection_id = await connector.create_connection(TENANT, _bearer_connection())
        await connector.make_request(connection_id, ApiRequest(endpoint="/items"), TENANT)
        upstream.script = [400]
        await connector.make_request(connection_id, ApiRequest(endpoint="/items"), TENANT)

        assert seen == ["connection:created", "request:success", "request:error"]

    @pytest.mark.asyncio
    async def test_test_connection(self, connector, upstream):
        connection_id = await connector.create_connection(TENANT, _bearer_connection())

        assert await connector.test_connection(connection_id, TENANT) is True
        assert upstream.requests[-1].url.path == "/health"

        upstream.script = [httpx.Response(404)]
        assert await connector.test_connection(connection_id, TENANT) is False
        assert await connector.test_connection("missing", TENANT) is False


class TestUpdateDelete:
    @pytest.mark.asyncio
    async def test_header_change_rebuilds_client(self, connector, upstream):
        connection_id = await connector.create_connection(TENANT, _bearer_connection())
        old_client = (await connector.cache.get_entry(TENANT, connection_id)).client

        updated = await connector.update_connection(connection_id, TENANT, {"headers": {"X-Version": "2"}})
        await connector.make_request(connection_id, ApiRequest(endpoint="/items"), TENANT)

        assert updated.headers == {"X-Version": "2"}
        assert old_client.is_closed
        assert upstream.headers[-1]["X-Version"] == "2"

    @pytest.mark.asyncio
    async def test_rename_keeps_client_and_credentials(self, connector, store):
        connection_id = await connector.create_connection(TENANT, _bearer_connection())
        before = await store.get_connection(TENANT, connection_id)
        old_client = (await connector.cache.get_entry(TENANT, connection_id)).client

        await connector.update_connection(connection_id, TENANT, {"name": "Renamed"})

        after = await store.get_connection(TENANT, connection_id)
        assert after.name == "Renamed"
        assert after.authentication == before.authentication
        assert (await connector.cache.get_entry(TENANT, connection_id)).client is old_client

    @pytest.mark.asyncio
    async def test_credential_change_reencrypts(self, connector, store, upstream):
        connection_id = await connector.create_connection(TENANT, _bearer_connection())
        before = await store.get_connection(TENANT, connection_id)

        await connector.update_connection(
            connection_id, TENANT, {"authentication": {"type": "bearer", "token": "tok-456"}}
        )
        await connector.make_request(connection_id, ApiRequest(endpoint="/items"), TENANT)

        after = await store.get_connection(TENANT, connection_id)
        assert after.authentication != before.authentication
        assert "tok-456" not in after.authentication
        assert upstream.headers[-1]["Authorization"] == "Bearer tok-456"

    @pytest.mark.asyncio
    async def test_update_unknown_or_foreign(self, connector):
        connection_id = await connector.create_connection(TENANT, _bearer_connection())
        with pytest.raises(ConnectionNotFoundError):
            await connector.update_connection(connection_id, "tenant-b", {"name": "x"})
        with pytest.raises(ValidationError):
            await connector.update_connection(connection_id, TENANT, {"base_url": "nope"})

    @pytest.mark.asyncio
    async def test_delete(self, connector, store):
        connection_id = await connector.create_connection(TENANT, _bearer_connection())
        client = (await connector.cache.get_entry(TENANT, connection_id)).client

        assert await connector.delete_connection(connection_id, "tenant-b") is False
        assert await connector.delete_connection(connection_id, TENANT) is True

        assert client.is_closed
        assert await connector.get_connection(connection_id, TENANT) is None
        assert await connector.delete_connection(connection_id, TENANT) is False

    @pytest.mark.asyncio
    async def test_list_is_tenant_scoped(self, connector):
        await connector.create_connection(TENANT, _bearer_connection(name="One"))
        await connector.create_connection(TENANT, _bearer_connection(name="Two"))
        await connector.create_connection("tenant-b", _bearer_connection(name="Other"))

        names = sorted(c.name for c in await connector.list_connections(TENANT))
        assert names == ["One", "Two"]


class TestOAuth2Connection:
    @pytest.mark.asyncio
    async def test_401_triggers_single_refresh_and_persists(self, store, cipher, sleep):
        token_calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.example.com":
                token_calls.append(parse_qs(request.content.decode()))
                return httpx.Response(200, json={"access_token": "at-new", "expires_in": 1800})
            if request.headers.get("Authorization") == "Bearer at-new":
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(401)

        connector = ApiConnector(
            store, cipher, dispatcher=RetryDispatcher(sleep=sleep), transport=httpx.MockTransport(handler)
        )
        connection_id = await connector.create_connection(
            TENANT,
            _bearer_connection(
                authentication={
                    "type": "oauth2",
                    "client_id": "cid",
                    "client_secret": "csecret",
                    "access_token": "at-old",
                    "refresh_token": "rt-1",
                    "token_url": "https://auth.example.com/token",
                }
            ),
        )

        response = await connector.make_request(connection_id, ApiRequest(endpoint="/me"), TENANT)

        assert response.success
        assert len(token_calls) == 1
        assert token_calls[0]["grant_type"] == ["refresh_token"]
        assert token_calls[0]["refresh_token"] == ["rt-1"]

        row = await store.get_connection(TENANT, connection_id)
        stored = cipher.decrypt(row.authentication)
        assert stored["access_token"] == "at-new"
        assert stored["refresh_token"] == "rt-1"
        await connector.close()

    @pytest.mark.asyncio
    async def test_delete_drops_refresh_lock(self, store, cipher, sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.example.com":
                return httpx.Response(200, json={"access_token": "at-new"})
            if request.headers.get("Authorization") == "Bearer at-new":
                return httpx.Response(200)
            return httpx.Response(401)

        connector = ApiConnector(
            store, cipher, dispatcher=RetryDispatcher(sleep=sleep), transport=httpx.MockTransport(handler)
        )
        connection_id = await connector.create_connection(
            TENANT,
            _bearer_connection(
                authentication={
                    "type": "oauth2",
                    "client_id": "cid",
                    "client_secret": "csecret",
                    "access_token": "at-old",
                    "refresh_token": "rt-1",
                    "token_url": "https://auth.example.com/token",
                }
            ),
        )
        await connector.make_request(connection_id, ApiRequest(endpoint="/me"), TENANT)
        assert (TENANT, connection_id) in connector._refresh_locks

        assert await connector.delete_connection(connection_id, TENANT) is True

        assert (TENANT, connection_id) not in connector._refresh_locks
        await connector.close()
