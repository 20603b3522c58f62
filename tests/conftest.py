from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
import socketio

from pyonionchat.cache import ChatCache
from pyonionchat.crypto import CryptoEngine, generate_room_key
from pyonionchat.exceptions import ApiError
from pyonionchat.models import Message, Room, RoomMember, RoomVisibility, Session, User
from pyonionchat.socket_config import SocketConfig
from pyonionchat.sync import SyncChannel


class FakeSioClient:
    """
    Stands in for `socketio.AsyncClient`, scripted by `FakeSocketServer`.

    Handlers are awaited inline rather than as library tasks, and reconnection
    follows the same shape as the real client: a doubling delay capped at the
    configured maximum, `reconnect_attempts` tries, then `wait()` returns.
    """

    def __init__(self, server: FakeSocketServer, config: SocketConfig) -> None:
        self.server = server
        self.config = config
        self.reconnection = config.reconnect and config.reconnect_attempts > 0
        self.handlers: dict[str, Callable[..., Awaitable[None]]] = {}
        self.connected = False
        self.url: str | None = None
        self.auth: Any = None
        self.headers: dict[str, str] | None = None
        self.transports: list[str] | None = None
        self.sent: list[tuple[str, Any]] = []
        self._sid: str | None = None
        self._ended = asyncio.Event()
        self._aborted = False
        self._reconnect_task: asyncio.Task[None] | None = None

    def on(self, event: str, handler: Callable[..., Awaitable[None]]) -> None:
        self.handlers[event] = handler

    async def _trigger(self, event: str, *args: Any) -> None:
        handler = self.handlers.get(event)
        if handler is not None:
            await handler(*args)

    async def _attempt(self) -> bool:
        self.server.connect_attempts += 1
        if self.server.fail_connects > 0:
            self.server.fail_connects -= 1
            await self._trigger("connect_error", "Connection refused by the server")
            return False
        if self.server.reject is not None:
            await self._trigger("connect_error", {"message": self.server.reject})
            return False
        self.server.sessions += 1
        self._sid = f"sid-{self.server.sessions}"
        self.connected = True
        await self._trigger("connect")
        return True

    async def _reconnect(self) -> bool:
        if not self.reconnection:
            return False
        delay = self.config.reconnect_delay_s
        for _ in range(self.config.reconnect_attempts):
            await asyncio.sleep(delay)
            if self._aborted:
                return False
            if await self._attempt():
                return True
            delay = min(delay * 2, self.config.reconnect_delay_max_s)
        return False

    async def _reconnect_or_end(self) -> None:
        if not await self._reconnect():
            self._ended.set()

    async def connect(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        auth: Any = None,
        transports: list[str] | None = None,
        socketio_path: str = "socket.io",
        wait_timeout: float = 1,
        retry: bool = False,
    ) -> None:
        self.url = url
        self.headers = headers
        self.auth = auth
        self.transports = transports
        self._ended.clear()
        if await self._attempt():
            return
        if retry and await self._reconnect():
            return
        raise socketio.exceptions.ConnectionError("Connection refused by the server")

    async def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        await self._trigger("disconnect", "client disconnect")
        self._ended.set()

    async def shutdown(self) -> None:
        self._aborted = True
        if self.connected:
            await self.disconnect()
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task():
            await task
        self._ended.set()

    async def wait(self) -> None:
        await self._ended.wait()

    async def emit(self, event: str, data: Any = None) -> None:
        if not self.connected:
            raise socketio.exceptions.BadNamespaceError("/ is not a connected namespace.")
        self.sent.append((event, data))

    def get_sid(self, namespace: str | None = None) -> str | None:
        return self._sid if self.connected else None

    # Server side

    async def push(self, name: str, *args: Any) -> None:
        assert self.connected
        await self._trigger("*", name, *args)

    async def drop(self) -> None:
        self.connected = False
        await self._trigger("disconnect", "transport error")
        if self.reconnection and not self._aborted:
            self._reconnect_task = asyncio.create_task(self._reconnect_or_end())
        else:
            self._ended.set()

    async def server_disconnect(self) -> None:
        self.connected = False
        await self._trigger("disconnect", "server disconnect")
        self._ended.set()


class FakeSocketServer:
    """Client factory standing in for the Socket.IO server."""

    def __init__(self) -> None:
        self.clients: list[FakeSioClient] = []
        self.connect_attempts = 0
        self.sessions = 0
        self.fail_connects = 0
        self.reject: str | None = None

    def __call__(self, config: SocketConfig) -> FakeSioClient:
        client = FakeSioClient(self, config)
        self.clients.append(client)
        return client

    @property
    def current(self) -> FakeSioClient:
        return self.clients[-1]

    def events(self) -> list[tuple[str, Any]]:
        return [e for c in self.clients for e in c.sent]


class FakeChatApi:
    """In-memory pull boundary with just enough server behaviour for the cache."""

    def __init__(self) -> None:
        self.token: str | None = None
        self.calls: list[str] = []
        self.fail: dict[str, ApiError] = {}
        self.before_messages: Callable[[str], Any] | None = None

        self.users: dict[str, tuple[str, User]] = {}
        self.valid_tokens: set[str] = set()
        self.rooms: dict[str, Room] = {}
        self.messages: dict[str, list[Message]] = {}
        self.members: dict[str, list[RoomMember]] = {}
        self._seq = 0

    # Test helpers

    def add_user(self, username: str, password: str = "secret") -> User:
        user = User(id=f"user-{username}", username=username)
        self.users[username] = (password, user)
        return user

    def add_room(self, room_id: str, name: str = "", *, key: str | None = None) -> Room:
        room = Room(id=room_id, name=name or room_id, encryption_key=key)
        self.rooms[room_id] = room
        self.messages.setdefault(room_id, [])
        self.members.setdefault(room_id, [])
        return room

    def add_message(
        self, room_id: str, message_id: str, wire: str, *, minute: int = 0, sender: str = "u1"
    ) -> Message:
        msg = Message(
            id=message_id,
            room_id=room_id,
            sender_id=sender,
            encrypted_content=wire,
            created_at=dt.datetime(2024, 1, 1, 12, minute, tzinfo=dt.UTC),
        )
        self.messages.setdefault(room_id, []).append(msg)
        return msg

    def _check(self, name: str) -> None:
        self.calls.append(name)
        err = self.fail.get(name)
        if err is not None:
            raise err

    def _room(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise ApiError("Room not found", status=404)
        return dataclasses.replace(room)

    # ChatApi

    def set_token(self, token: str | None) -> None:
        self.token = token

    async def login(self, username: str, password: str) -> Session:
        self._check("login")
        entry = self.users.get(username)
        if entry is None or entry[0] != password:
            raise ApiError("Invalid credentials", status=401)
        token = f"tok-{username}"
        self.valid_tokens.add(token)
        return Session(token=token, user=entry[1])

    async def register(
        self, username: str, email: str, password: str, display_name: str | None = None
    ) -> Session:
        self._check("register")
        if username in self.users:
            raise ApiError("Username already exists", status=409)
        user = self.add_user(username, password)
        user.email = email
        user.display_name = display_name
        token = f"tok-{username}"
        self.valid_tokens.add(token)
        return Session(token=token, user=user)

    async def logout(self) -> None:
        self._check("logout")
        self.valid_tokens.discard(self.token or "")

    async def get_me(self) -> User:
        self._check("get_me")
        if self.token not in self.valid_tokens:
            raise ApiError("Invalid token", status=401)
        username = (self.token or "").removeprefix("tok-")
        return self.users[username][1]

    async def get_rooms(self) -> list[Room]:
        self._check("get_rooms")
        return [dataclasses.replace(r) for r in self.rooms.values()]

    async def get_room(self, room_id: str) -> Room:
        self._check("get_room")
        return self._room(room_id)

    async def create_room(
        self,
        name: str,
        *,
        description: str | None = None,
        visibility: RoomVisibility = "public",
        max_members: int | None = None,
    ) -> Room:
        self._check("create_room")
        self._seq += 1
        room = self.add_room(f"room-{self._seq}", name, key=generate_room_key())
        room.description = description
        room.visibility = visibility
        room.max_members = max_members
        return dataclasses.replace(room)

    async def join_room(self, room_id: str) -> Room:
        self._check("join_room")
        return self._room(room_id)

    async def leave_room(self, room_id: str) -> None:
        self._check("leave_room")
        self._room(room_id)

    async def delete_room(self, room_id: str) -> None:
        self._check("delete_room")
        self._room(room_id)
        del self.rooms[room_id]

    async def get_room_messages(
        self, room_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[Message]:
        self._check("get_room_messages")
        if self.before_messages is not None:
            await self.before_messages(room_id)
        newest_first = list(reversed(self.messages.get(room_id, [])))
        return [dataclasses.replace(m) for m in newest_first[offset : offset + limit]]

    async def get_room_members(self, room_id: str) -> list[RoomMember]:
        self._check("get_room_members")
        return [dataclasses.replace(m) for m in self.members.get(room_id, [])]

    async def add_member(self, room_id: str, user_id: str) -> None:
        self._check("add_member")
        self.members.setdefault(room_id, []).append(RoomMember(room_id=room_id, user_id=user_id))

    async def remove_member(self, room_id: str, user_id: str) -> None:
        self._check("remove_member")
        self.members[room_id] = [m for m in self.members.get(room_id, []) if m.user_id != user_id]


async def until(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    """Poll the event loop until `predicate()` holds."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def api() -> FakeChatApi:
    return FakeChatApi()


@pytest.fixture
def server() -> FakeSocketServer:
    return FakeSocketServer()


@pytest.fixture
def socket_config() -> SocketConfig:
    return SocketConfig(
        url="http://chat.test",
        connect_timeout_s=1.0,
        reconnect_attempts=2,
        reconnect_delay_s=0.01,
        reconnect_delay_max_s=0.02,
    )


@pytest.fixture
def crypto() -> CryptoEngine:
    return CryptoEngine()


@pytest_asyncio.fixture
async def channel(
    server: FakeSocketServer, socket_config: SocketConfig
) -> AsyncIterator[SyncChannel]:
    ch = SyncChannel(socket_config, client_factory=server)
    yield ch
    await ch.close()


@pytest_asyncio.fixture
async def cache(
    api: FakeChatApi, channel: SyncChannel, crypto: CryptoEngine
) -> AsyncIterator[ChatCache]:
    await crypto.initialize()
    c = ChatCache(api, channel, crypto, page_size=3, typing_timeout_s=0.05)
    c.attach()
    yield c
    await c.aclose()
