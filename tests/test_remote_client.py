"""Tests for the HTTP remote store client."""

import json

import httpx
import pytest

from splitledger.clients.remote import HttpRemoteStore
from splitledger.exceptions import RemoteAPIError, SyncError
from splitledger.models import EntityKind, RemoteChange


def make_client(handler) -> HttpRemoteStore:
    """Create a client backed by a mock transport."""
    return HttpRemoteStore(
        "https://ledger.example.com/api",
        token="secret",
        device_id="phone",
        transport=httpx.MockTransport(handler),
    )


class TestFetchChanges:
    """Tests for fetch_changes."""

    def test_parses_changes_and_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/changes"
            assert request.url.params["since"] == "41"
            assert request.headers["Authorization"] == "Bearer secret"
            return httpx.Response(
                200,
                json={
                    "changes": [
                        {
                            "kind": "member",
                            "entity_id": "m1",
                            "fields": {"name": "Alice"},
                        },
                        {"kind": "expense", "entity_id": "e1", "deleted": True},
                    ],
                    "token": "43",
                },
            )

        with make_client(handler) as client:
            change_set = client.fetch_changes("41")

        assert change_set.token == "43"
        assert change_set.changes[0].kind == EntityKind.MEMBER
        assert change_set.changes[0].fields == {"name": "Alice"}
        assert change_set.changes[1].deleted is True

    def test_no_token_fetches_everything(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "since" not in request.url.params
            return httpx.Response(200, json={"changes": [], "token": "0"})

        with make_client(handler) as client:
            assert client.fetch_changes(None).changes == []

    def test_malformed_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"changes": [{"kind": "planet"}]})

        with make_client(handler) as client, pytest.raises(SyncError):
            client.fetch_changes(None)


class TestPushChanges:
    """Tests for push_changes."""

    def test_sends_field_level_changes(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"accepted": 1})

        change = RemoteChange(
            kind=EntityKind.EXPENSE, entity_id="e1", fields={"amount": "36.00"}
        )
        with make_client(handler) as client:
            client.push_changes([change])

        assert seen["method"] == "POST"
        assert seen["body"]["device_id"] == "phone"
        assert seen["body"]["changes"][0]["fields"] == {"amount": "36.00"}
        assert seen["body"]["changes"][0]["kind"] == "expense"

    def test_empty_push_makes_no_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with make_client(handler) as client:
            client.push_changes([])


class TestErrors:
    """Failures surface as SyncError."""

    def test_auth_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": "bad token"})

        with make_client(handler) as client, pytest.raises(RemoteAPIError) as exc_info:
            client.setup()

        assert exc_info.value.status_code == 401
        assert "credentials" in str(exc_info.value)

    def test_server_rejection(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, text="conflict")

        with make_client(handler) as client, pytest.raises(RemoteAPIError) as exc_info:
            client.push_changes(
                [RemoteChange(kind=EntityKind.MEMBER, entity_id="m1", deleted=True)]
            )

        assert exc_info.value.status_code == 409

    def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with make_client(handler) as client, pytest.raises(SyncError) as exc_info:
            client.fetch_changes(None)

        assert "timed out" in str(exc_info.value)

    def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route", request=request)

        with make_client(handler) as client, pytest.raises(SyncError):
            client.setup()

    def test_setup_succeeds(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/setup"
            assert json.loads(request.content) == {"device_id": "phone"}
            return httpx.Response(200, json={"schema_version": 1})

        with make_client(handler) as client:
            client.setup()
