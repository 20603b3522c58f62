from __future__ import annotations

import urllib.parse
from typing import Any, Protocol

from .connection.http import HttpConfig, HttpTransport
from .constants import DEFAULT_API_URL, DEFAULT_PAGE_SIZE
from .exceptions import ApiError, ProtocolError
from .models import Message, Room, RoomMember, RoomVisibility, Session, User
from .serde import (
    member_from_dict,
    message_from_dict,
    room_from_dict,
    session_from_dict,
    user_from_dict,
)


class ChatApi(Protocol):
    """Request/response boundary used for snapshot loads and room management."""

    def set_token(self, token: str | None) -> None: ...

    async def login(self, username: str, password: str) -> Session: ...

    async def register(
        self, username: str, email: str, password: str, display_name: str | None = None
    ) -> Session: ...

    async def logout(self) -> None: ...

    async def get_me(self) -> User: ...

    async def get_rooms(self) -> list[Room]: ...

    async def get_room(self, room_id: str) -> Room: ...

    async def create_room(
        self,
        name: str,
        *,
        description: str | None = None,
        visibility: RoomVisibility = "public",
        max_members: int | None = None,
    ) -> Room: ...

    async def join_room(self, room_id: str) -> Room: ...

    async def leave_room(self, room_id: str) -> None: ...

    async def delete_room(self, room_id: str) -> None: ...

    async def get_room_messages(
        self, room_id: str, *, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> list[Message]: ...

    async def get_room_members(self, room_id: str) -> list[RoomMember]: ...

    async def add_member(self, room_id: str, user_id: str) -> None: ...

    async def remove_member(self, room_id: str, user_id: str) -> None: ...


def _path(*parts: str) -> str:
    return "/" + "/".join(urllib.parse.quote(p, safe="") for p in parts)


def _obj(resp: dict[str, Any], key: str) -> dict[str, Any]:
    v = resp.get(key)
    if not isinstance(v, dict):
        raise ApiError(f"response missing {key!r}")
    return v


def _list(resp: dict[str, Any], key: str) -> list[dict[str, Any]]:
    v = resp.get(key)
    if v is None:
        return []
    if not isinstance(v, list):
        raise ApiError(f"response field {key!r} is not a list")
    return [x for x in v if isinstance(x, dict)]


class HttpChatApi:
    """
    JSON REST client for the chat service.

    Responses wrap their payload (`{"rooms": [...]}`, `{"room": {...}}`, ...).
    Failures raise `ApiError` carrying the server's `error` text.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        *,
        timeout_s: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: HttpTransport | None = None,
    ) -> None:
        self._http = transport or HttpTransport(
            HttpConfig(base_url=base_url, timeout_s=timeout_s, headers=dict(headers or {}))
        )

    def set_token(self, token: str | None) -> None:
        self._http.token = token

    async def _call(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self._http.request(method, path, body=body, params=params)

    def _decode(self, fn: Any, raw: dict[str, Any], **kwargs: Any) -> Any:
        try:
            return fn(raw, **kwargs)
        except ProtocolError as e:
            raise ApiError(f"malformed response: {e}") from e

    # Auth

    async def login(self, username: str, password: str) -> Session:
        body = {"username": username, "password": password}
        resp = await self._call("POST", "/auth/login", body=body)
        return self._decode(session_from_dict, resp)

    async def register(
        self, username: str, email: str, password: str, display_name: str | None = None
    ) -> Session:
        body: dict[str, Any] = {"username": username, "email": email, "password": password}
        if display_name:
            body["displayName"] = display_name
        resp = await self._call("POST", "/auth/register", body=body)
        return self._decode(session_from_dict, resp)

    async def logout(self) -> None:
        await self._call("POST", "/auth/logout")

    async def get_me(self) -> User:
        resp = await self._call("GET", "/auth/me")
        return self._decode(user_from_dict, _obj(resp, "user"))

    # Rooms

    async def get_rooms(self) -> list[Room]:
        resp = await self._call("GET", "/rooms")
        return [self._decode(room_from_dict, r) for r in _list(resp, "rooms")]

    async def get_room(self, room_id: str) -> Room:
        resp = await self._call("GET", _path("rooms", room_id))
        return self._decode(room_from_dict, _obj(resp, "room"))

    async def create_room(
        self,
        name: str,
        *,
        description: str | None = None,
        visibility: RoomVisibility = "public",
        max_members: int | None = None,
    ) -> Room:
        body: dict[str, Any] = {"name": name, "type": visibility}
        if description is not None:
            body["description"] = description
        if max_members is not None:
            body["maxMembers"] = max_members
        resp = await self._call("POST", "/rooms", body=body)
        return self._decode(room_from_dict, _obj(resp, "room"))

    async def join_room(self, room_id: str) -> Room:
        resp = await self._call("POST", _path("rooms", room_id, "join"))
        return self._decode(room_from_dict, _obj(resp, "room"))

    async def leave_room(self, room_id: str) -> None:
        await self._call("POST", _path("rooms", room_id, "leave"))

    async def delete_room(self, room_id: str) -> None:
        await self._call("DELETE", _path("rooms", room_id))

    async def get_room_messages(
        self, room_id: str, *, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> list[Message]:
        resp = await self._call(
            "GET", _path("rooms", room_id, "messages"), params={"limit": limit, "offset": offset}
        )
        return [
            self._decode(message_from_dict, m, room_id=room_id) for m in _list(resp, "messages")
        ]

    async def get_room_members(self, room_id: str) -> list[RoomMember]:
        resp = await self._call("GET", _path("rooms", room_id, "members"))
        return [
            self._decode(member_from_dict, m, room_id=room_id) for m in _list(resp, "members")
        ]

    async def add_member(self, room_id: str, user_id: str) -> None:
        await self._call("POST", _path("rooms", room_id, "members"), body={"userId": user_id})

    async def remove_member(self, room_id: str, user_id: str) -> None:
        await self._call("DELETE", _path("rooms", room_id, "members", user_id))
