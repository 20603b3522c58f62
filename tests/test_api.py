from __future__ import annotations

import io
import json
import urllib.error
import urllib.request
from typing import Any

import pytest

from pyonionchat.api import HttpChatApi
from pyonionchat.connection.http import HttpConfig, HttpTransport, _error_message
from pyonionchat.exceptions import ApiError


class StubTransport(HttpTransport):
    def __init__(self, responses: dict[tuple[str, str], dict[str, Any]] | None = None) -> None:
        super().__init__(HttpConfig(base_url="http://api.test"))
        self.responses = responses or {}
        self.requests: list[tuple[str, str, dict[str, Any] | None, dict[str, Any] | None]] = []

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.requests.append((method, path, body, params))
        return self.responses.get((method, path), {})


@pytest.mark.asyncio
async def test_login_and_token_handling() -> None:
    http = StubTransport(
        {("POST", "/auth/login"): {"token": "t1", "user": {"id": "u1", "username": "alice"}}}
    )
    api = HttpChatApi(transport=http)

    session = await api.login("alice", "pw")
    api.set_token(session.token)

    assert session.user.username == "alice"
    assert http.requests == [("POST", "/auth/login", {"username": "alice", "password": "pw"}, None)]
    assert http.token == "t1"


@pytest.mark.asyncio
async def test_register_sends_display_name_only_when_given() -> None:
    resp = {"token": "t", "user": {"id": "u1"}}
    http = StubTransport({("POST", "/auth/register"): resp})
    api = HttpChatApi(transport=http)

    await api.register("bob", "b@x.io", "pw")
    await api.register("bob", "b@x.io", "pw", "Bob")

    assert http.requests[0][2] == {"username": "bob", "email": "b@x.io", "password": "pw"}
    assert http.requests[1][2] == {
        "username": "bob",
        "email": "b@x.io",
        "password": "pw",
        "displayName": "Bob",
    }


@pytest.mark.asyncio
async def test_room_endpoints() -> None:
    room = {"id": "r 1", "name": "general", "encryptionKey": "a2V5"}
    http = StubTransport(
        {
            ("GET", "/rooms"): {"rooms": [room]},
            ("POST", "/rooms"): {"room": room},
            ("POST", "/rooms/r%201/join"): {"room": room},
        }
    )
    api = HttpChatApi(transport=http)

    rooms = await api.get_rooms()
    created = await api.create_room("general", visibility="private", max_members=10)
    joined = await api.join_room("r 1")
    await api.leave_room("r 1")
    await api.delete_room("r 1")

    assert rooms[0].encryption_key == "a2V5"
    assert created.id == joined.id == "r 1"
    assert http.requests[1][2] == {"name": "general", "type": "private", "maxMembers": 10}
    assert [(m, p) for m, p, _, _ in http.requests[2:]] == [
        ("POST", "/rooms/r%201/join"),
        ("POST", "/rooms/r%201/leave"),
        ("DELETE", "/rooms/r%201"),
    ]


@pytest.mark.asyncio
async def test_messages_and_members_inherit_room_id() -> None:
    http = StubTransport(
        {
            ("GET", "/rooms/r1/messages"): {
                "messages": [{"id": "m2", "encryptedContent": "eA=="}, "junk"]
            },
            ("GET", "/rooms/r1/members"): {"members": [{"userId": "u1", "role": "admin"}]},
        }
    )
    api = HttpChatApi(transport=http)

    messages = await api.get_room_messages("r1", limit=20, offset=40)
    members = await api.get_room_members("r1")
    await api.add_member("r1", "u2")
    await api.remove_member("r1", "u2")

    assert [(m.id, m.room_id) for m in messages] == [("m2", "r1")]
    assert http.requests[0][3] == {"limit": 20, "offset": 40}
    assert members[0].room_id == "r1" and members[0].role == "admin"
    assert http.requests[2] == ("POST", "/rooms/r1/members", {"userId": "u2"}, None)
    assert http.requests[3][:2] == ("DELETE", "/rooms/r1/members/u2")


@pytest.mark.asyncio
async def test_malformed_response_is_an_api_error() -> None:
    api = HttpChatApi(transport=StubTransport({("GET", "/auth/me"): {"user": "nope"}}))
    with pytest.raises(ApiError):
        await api.get_me()

    api = HttpChatApi(transport=StubTransport({("GET", "/rooms/r1"): {"room": {"name": "x"}}}))
    with pytest.raises(ApiError, match="malformed response"):
        await api.get_room("r1")

    api = HttpChatApi(
        transport=StubTransport(
            {("GET", "/rooms"): {"rooms": [{"id": "r1", "name": "x", "maxMembers": "lots"}]}}
        )
    )
    with pytest.raises(ApiError, match="maxMembers"):
        await api.get_rooms()


def test_error_message_prefers_server_text() -> None:
    assert _error_message(b'{"error":"Room not found"}', "fallback") == "Room not found"
    assert _error_message(b'{"message":"Too many requests"}', "fallback") == "Too many requests"
    assert _error_message(b"<html>502</html>", "fallback") == "fallback"
    assert _error_message(b"", "fallback") == "fallback"


class _Response:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> _Response:
        return self

    def __exit__(self, *exc: object) -> None:
        return None


@pytest.mark.asyncio
async def test_http_transport_sends_bearer_and_json(monkeypatch) -> None:
    seen: list[urllib.request.Request] = []

    def fake_urlopen(req: urllib.request.Request, timeout: float) -> _Response:
        seen.append(req)
        return _Response(b'{"ok":true}')

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    http = HttpTransport(HttpConfig(base_url="http://api.test/api/"))
    http.token = "tok"

    resp = await http.request(
        "POST", "/rooms", body={"name": "x"}, params={"limit": 5, "after": None}
    )

    assert resp == {"ok": True}
    req = seen[0]
    assert req.full_url == "http://api.test/api/rooms?limit=5"
    assert req.get_header("Authorization") == "Bearer tok"
    assert req.get_header("Content-type") == "application/json"
    assert json.loads(req.data) == {"name": "x"}


@pytest.mark.asyncio
async def test_http_transport_maps_status_errors(monkeypatch) -> None:
    def fake_urlopen(req: urllib.request.Request, timeout: float) -> _Response:
        raise urllib.error.HTTPError(
            req.full_url, 401, "Unauthorized", {}, io.BytesIO(b'{"error":"Invalid token"}')
        )

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    http = HttpTransport(HttpConfig(base_url="http://api.test"))

    with pytest.raises(ApiError) as exc_info:
        await http.request("GET", "/auth/me")

    assert exc_info.value.message == "Invalid token"
    assert exc_info.value.status == 401


@pytest.mark.asyncio
async def test_http_transport_maps_network_errors(monkeypatch) -> None:
    def fake_urlopen(req: urllib.request.Request, timeout: float) -> _Response:
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    http = HttpTransport(HttpConfig(base_url="http://api.test"))

    with pytest.raises(ApiError) as exc_info:
        await http.request("GET", "/rooms")

    assert exc_info.value.status is None
    assert "connection refused" in exc_info.value.message
