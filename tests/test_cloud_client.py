from __future__ import annotations

import asyncio
import json
import urllib.error
from typing import Any

import pytest
from conftest import INSTALL, raw_install, raw_user, raw_zone

from nea_smart_mqtt.app.cloud_client import CloudClient
from nea_smart_mqtt.app.errors import (
    AuthError,
    CommandRejected,
    NetworkError,
    ParseError,
    RefreshExpired,
    SessionExpired,
)
from nea_smart_mqtt.app.session import Session

SESSION = Session(access_token="tok-123456", refresh_token="ref", expires_at=1e12, obtained_at=0.0)


class FakeHTTPClient(CloudClient):
    def __init__(self, responses: list[tuple[int, Any] | Exception]):
        super().__init__(api_base="https://cloud.test/", email="someone@example.com")
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def _http(self, method, path, *, payload=None, headers=None):
        self.requests.append({"method": method, "path": path, "payload": payload, "headers": headers or {}})
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        status, body = r
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode()
        elif isinstance(body, str):
            body = body.encode()
        return status, body


def test_login_posts_credentials() -> None:
    client = FakeHTTPClient([(200, {"access_token": "a", "refresh_token": "r"})])
    body = asyncio.run(client.request_login("someone@example.com", "pw"))
    assert body["access_token"] == "a"
    req = client.requests[0]
    assert req["method"] == "POST"
    assert req["path"] == "/v2/auth/login"
    assert req["payload"] == {"username": "someone@example.com", "password": "pw"}
    assert client.api_base == "https://cloud.test"


@pytest.mark.parametrize("status", [400, 401, 403])
def test_login_rejected(status: int) -> None:
    client = FakeHTTPClient([(status, {"message": "nope"})])
    with pytest.raises(AuthError):
        asyncio.run(client.request_login("u", "p"))


def test_refresh_rejected() -> None:
    client = FakeHTTPClient([(401, "")])
    with pytest.raises(RefreshExpired):
        asyncio.run(client.request_refresh("ref"))


@pytest.mark.parametrize(
    "response",
    [(500, "oops"), (503, {"error": "down"}), urllib.error.URLError("dns"), TimeoutError("slow")],
)
def test_transport_failures_are_network_errors(response) -> None:
    client = FakeHTTPClient([response])
    with pytest.raises(NetworkError):
        asyncio.run(client.fetch_user_data(SESSION))


def test_fetch_user_data_sends_bearer() -> None:
    client = FakeHTTPClient([(200, raw_user())])
    user = asyncio.run(client.fetch_user_data(SESSION))
    assert user.installations[0].unique == INSTALL
    req = client.requests[0]
    assert req["headers"]["Authorization"] == "Bearer tok-123456"
    assert req["path"] == "/v2/users/someone%40example.com/getUserData"


def test_data_401_is_session_expired() -> None:
    client = FakeHTTPClient([(401, {"message": "expired"})])
    with pytest.raises(SessionExpired):
        asyncio.run(client.fetch_installation(SESSION, INSTALL))


def test_non_json_body_is_parse_error() -> None:
    client = FakeHTTPClient([(200, "<html>maintenance</html>")])
    with pytest.raises(ParseError):
        asyncio.run(client.fetch_installation(SESSION, INSTALL))


def test_fetch_installation_parses_snapshot() -> None:
    client = FakeHTTPClient([(200, raw_install([raw_zone("z1"), raw_zone("z2", number=2)]))])
    snap = asyncio.run(client.fetch_installation(SESSION, INSTALL))
    assert [z.id for z in snap.zones] == ["z1", "z2"]
    assert "installsList=INST1" in client.requests[0]["path"]


def test_channel_command() -> None:
    client = FakeHTTPClient([(200, {"success": True})])
    asyncio.run(client.send_channel_command(SESSION, INSTALL, "ch-1", {"setpoint_h_normal": 707}))
    req = client.requests[0]
    assert req["method"] == "POST"
    assert req["path"] == "/v2/installations/INST1/channels/ch-1"
    assert req["payload"] == {"data": {"setpoint_h_normal": 707}}


@pytest.mark.parametrize("response", [(400, {"message": "bad"}), (200, {"success": False, "message": "locked"})])
def test_channel_command_refused(response) -> None:
    client = FakeHTTPClient([response])
    with pytest.raises(CommandRejected):
        asyncio.run(client.send_channel_command(SESSION, INSTALL, "ch-1", {"mode_permanent": 3}))


def test_channel_command_401() -> None:
    client = FakeHTTPClient([(401, "")])
    with pytest.raises(SessionExpired):
        asyncio.run(client.send_channel_command(SESSION, INSTALL, "ch-1", {"mode_permanent": 3}))
