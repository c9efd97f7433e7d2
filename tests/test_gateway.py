"""Tests for the media server HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from access_service.errors import NotFoundError, RemoteUnavailableError
from access_service.gateway.client import MediaServerGateway
from access_service.gateway.models import extract_home_layout

USER = {
    "Id": "u1",
    "Name": "alice",
    "Policy": {
        "IsAdministrator": False,
        "IsDisabled": False,
        "EnabledFolders": ["f1"],
        "EnableAllFolders": False,
        "EnableRemoteAccess": True,
    },
    "Configuration": {"OrderedViews": ["f1"], "SubtitleMode": "Default"},
}


def _gateway(handler) -> MediaServerGateway:
    return MediaServerGateway(
        "http://media.local/", "api-key", transport=httpx.MockTransport(handler)
    )


def test_list_accounts_parses_and_sends_api_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[USER])

    accounts = _gateway(handler).list_accounts()

    assert [account.id for account in accounts] == ["u1"]
    assert accounts[0].policy.enabled_folders == ["f1"]
    assert seen[0].url.path == "/Users"
    assert seen[0].headers["X-Emby-Token"] == "api-key"


def test_policy_write_back_keeps_unknown_fields():
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            posted.append(json.loads(request.content))
            return httpx.Response(204)
        return httpx.Response(200, json=USER)

    gateway = _gateway(handler)
    policy = gateway.get_account_policy("u1")
    policy.is_disabled = True
    gateway.set_account_policy("u1", policy.to_payload())

    assert posted[0]["IsDisabled"] is True
    assert posted[0]["EnableRemoteAccess"] is True


def test_authenticate_returns_none_on_rejection():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"Username": "alice", "Pw": "nope"}
        assert "MediaBrowser" in request.headers["X-Emby-Authorization"]
        return httpx.Response(401)

    assert _gateway(handler).authenticate("alice", "nope") is None


def test_authenticate_returns_token():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"AccessToken": "tok", "User": USER})

    assert _gateway(handler).authenticate("alice", "secret") == "tok"


def test_authenticate_server_error_is_remote_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    with pytest.raises(RemoteUnavailableError):
        _gateway(handler).authenticate("alice", "secret")


def test_create_account_returns_new_id():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/Users/New"
        assert json.loads(request.content) == {"Name": "bob", "Password": "pw123456"}
        return httpx.Response(200, json={"Id": "u2", "Name": "bob"})

    assert _gateway(handler).create_account("bob", "pw123456") == "u2"


def test_library_folders_are_read_from_items():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"Items": [{"Id": "f1", "Name": "Movies", "CollectionType": "movies"}]}
        )

    folders = _gateway(handler).list_library_folders()

    assert [(folder.id, folder.name) for folder in folders] == [("f1", "Movies")]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, content=b"not json"),
        httpx.Response(200, json=[{"Name": "missing id"}]),
        httpx.Response(502),
    ],
)
def test_bad_responses_become_remote_unavailable(response):
    with pytest.raises(RemoteUnavailableError):
        _gateway(lambda request: response).list_accounts()


def test_transport_errors_become_remote_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(RemoteUnavailableError):
        _gateway(handler).get_account("u1")


def test_missing_account_is_not_found():
    with pytest.raises(NotFoundError):
        _gateway(lambda request: httpx.Response(404)).get_account("gone")


def test_missing_endpoint_on_writes_is_remote_unavailable():
    with pytest.raises(RemoteUnavailableError):
        _gateway(lambda request: httpx.Response(404)).set_account_policy("gone", {"IsDisabled": True})


def test_missing_policy_is_remote_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"Id": "u1", "Name": "alice"})

    with pytest.raises(RemoteUnavailableError):
        _gateway(handler).get_account_policy("u1")


def test_extract_home_layout_keeps_display_keys_only():
    layout = extract_home_layout(USER["Configuration"])

    assert layout == {"OrderedViews": ["f1"], "LatestItemsExcludes": [], "MyMediaExcludes": []}
    assert extract_home_layout(None) == {}
