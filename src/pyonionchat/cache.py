"""
Authoritative in-memory chat state.

`ChatCache` owns rooms, per-room message lists (oldest first), member lists,
room keys, typing indicators, presence and unread counts. Two sources feed it:

- snapshot loads through the pull API (`load_rooms`, `select_room`,
  `load_messages`, `load_more_messages`, `load_members`), and
- live deltas from the push channel (`MessageReceived`, `MessageEdited`, ...).

Both converge on the same rule: a message id is stored at most once per room.
Mutations of a room's message list are serialized by a per-room lock, so a pull
merge and a push append for the same room never interleave.

Message bodies are decrypted as they enter the cache. A body that cannot be
decrypted (no key, wrong key, tampered) is shown as `DECRYPTION_PLACEHOLDER`
and never aborts the surrounding operation.

Changes are published on `events` as the `CacheEvent` variants defined here.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .api import ChatApi
from .constants import DECRYPTION_PLACEHOLDER, DEFAULT_PAGE_SIZE, DEFAULT_TYPING_TIMEOUT_S
from .crypto.engine import CryptoEngine
from .events import (
    ChannelError,
    ConnectionUp,
    MemberJoined,
    MemberLeft,
    MessageDeleted,
    MessageEdited,
    MessageReceived,
    PresenceChanged,
    ReactionAdded,
    ReactionRemoved,
    TypingChanged,
)
from .exceptions import ApiError, CryptoError, MissingRoomKeyError, OnionChatError
from .models import Message, Room, RoomMember, RoomVisibility, TypingUser, User, message_kind_for
from .sync import SyncChannel
from .util.asyncio import ensure_task
from .util.events import AsyncEventHub, Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RoomsChanged:
    pass


@dataclass(frozen=True, slots=True)
class CurrentRoomChanged:
    room_id: str | None


@dataclass(frozen=True, slots=True)
class MessagesChanged:
    room_id: str


@dataclass(frozen=True, slots=True)
class MembersChanged:
    room_id: str


@dataclass(frozen=True, slots=True)
class TypingUsersChanged:
    room_id: str


@dataclass(frozen=True, slots=True)
class PresenceUpdated:
    user_id: str
    is_online: bool


@dataclass(frozen=True, slots=True)
class UnreadChanged:
    room_id: str
    count: int


@dataclass(frozen=True, slots=True)
class ErrorChanged:
    error: str | None


@dataclass(frozen=True, slots=True)
class LoadingChanged:
    loading: bool


CacheEvent = (
    RoomsChanged
    | CurrentRoomChanged
    | MessagesChanged
    | MembersChanged
    | TypingUsersChanged
    | PresenceUpdated
    | UnreadChanged
    | ErrorChanged
    | LoadingChanged
)


def _reason(e: OnionChatError) -> str:
    if isinstance(e, ApiError):
        return e.message
    return str(e)


class ChatCache:
    def __init__(
        self,
        api: ChatApi,
        channel: SyncChannel,
        crypto: CryptoEngine,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        typing_timeout_s: float = DEFAULT_TYPING_TIMEOUT_S,
    ) -> None:
        self.api = api
        self.channel = channel
        self.crypto = crypto
        self.page_size = page_size
        self.typing_timeout_s = typing_timeout_s
        self.events = AsyncEventHub()

        self._rooms: list[Room] = []
        self._current: Room | None = None
        self._messages: dict[str, list[Message]] = {}
        self._members: dict[str, list[RoomMember]] = {}
        self._keys: dict[str, str] = {}
        self._has_more: dict[str, bool] = {}
        self._typing: dict[str, dict[str, TypingUser]] = {}
        self._typing_timers: dict[tuple[str, str], asyncio.Task[None]] = {}
        self._online: set[str] = set()
        self._unread: dict[str, int] = {}
        self._departed: set[str] = set()

        self._error: str | None = None
        self._busy_count = 0
        self._locks: dict[str, asyncio.Lock] = {}
        self._generation = 0
        self._subs: list[Subscription[Any]] = []

    # Views

    @property
    def rooms(self) -> list[Room]:
        return list(self._rooms)

    @property
    def current_room(self) -> Room | None:
        return self._current

    @property
    def current_room_id(self) -> str | None:
        return self._current.id if self._current else None

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def loading(self) -> bool:
        return self._busy_count > 0

    @property
    def online_users(self) -> frozenset[str]:
        return frozenset(self._online)

    def messages(self, room_id: str | None = None) -> list[Message]:
        """Messages of `room_id` (default: the current room), oldest first."""

        rid = room_id or self.current_room_id
        if rid is None or rid in self._departed:
            return []
        return list(self._messages.get(rid, ()))

    def get_message(self, room_id: str, message_id: str) -> Message | None:
        for m in self._messages.get(room_id, ()):
            if m.id == message_id:
                return m
        return None

    def members(self, room_id: str | None = None) -> list[RoomMember]:
        rid = room_id or self.current_room_id
        if rid is None or rid in self._departed:
            return []
        return list(self._members.get(rid, ()))

    def typing_users(self, room_id: str | None = None) -> list[TypingUser]:
        rid = room_id or self.current_room_id
        if rid is None:
            return []
        now = asyncio.get_running_loop().time()
        users = self._typing.get(rid, {}).values()
        return [u for u in users if now - u.since < self.typing_timeout_s]

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def unread_count(self, room_id: str) -> int:
        return self._unread.get(room_id, 0)

    def has_more(self, room_id: str) -> bool:
        return self._has_more.get(room_id, False)

    def has_key(self, room_id: str) -> bool:
        return room_id in self._keys

    # Wiring

    def attach(self) -> None:
        """Start applying push channel events to the cache."""

        if self._subs:
            return
        ch = self.channel
        self._subs = [
            ch.subscribe(MessageReceived, self._on_message),
            ch.subscribe(MessageEdited, self._on_message_edited),
            ch.subscribe(MessageDeleted, self._on_message_deleted),
            ch.subscribe(ReactionAdded, self._on_reaction_added),
            ch.subscribe(ReactionRemoved, self._on_reaction_removed),
            ch.subscribe(MemberJoined, self._on_member_joined),
            ch.subscribe(MemberLeft, self._on_member_left),
            ch.subscribe(PresenceChanged, self._on_presence),
            ch.subscribe(TypingChanged, self._on_typing),
            ch.subscribe(ChannelError, self._on_channel_error),
            ch.subscribe(ConnectionUp, self._on_connection_up),
        ]

    def detach(self) -> None:
        for sub in self._subs:
            sub.cancel()
        self._subs = []

    async def aclose(self) -> None:
        self.detach()
        self._cancel_typing_timers()

    async def reset(self) -> None:
        """Drop all state, e.g. after the session ended."""

        self._generation += 1
        self._cancel_typing_timers()
        had_current = self._current is not None
        self._rooms = []
        self._current = None
        self._messages.clear()
        self._members.clear()
        self._keys.clear()
        self._has_more.clear()
        self._typing.clear()
        self._online.clear()
        self._unread.clear()
        self._departed.clear()

        await self.events.emit(RoomsChanged())
        if had_current:
            await self.events.emit(CurrentRoomChanged(room_id=None))
        await self._set_error(None)

    # Internals

    def _lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    async def _set_error(self, error: str | None) -> None:
        if error == self._error:
            return
        self._error = error
        await self.events.emit(ErrorChanged(error=error))

    async def _fail(self, e: OnionChatError, action: str) -> None:
        reason = _reason(e) or action
        logger.warning("%s: %s", action, reason)
        await self._set_error(reason)

    async def clear_error(self) -> None:
        await self._set_error(None)

    @contextlib.asynccontextmanager
    async def _busy(self) -> AsyncIterator[None]:
        self._busy_count += 1
        if self._busy_count == 1:
            await self.events.emit(LoadingChanged(loading=True))
        try:
            yield
        finally:
            self._busy_count -= 1
            if self._busy_count == 0:
                await self.events.emit(LoadingChanged(loading=False))

    async def _decrypt_into(self, message: Message) -> None:
        key = self._keys.get(message.room_id)
        if key is None:
            message.decrypted_content = DECRYPTION_PLACEHOLDER
            message.decryption_failed = True
            return
        try:
            message.decrypted_content = await self.crypto.decrypt(message.encrypted_content, key)
            message.decryption_failed = False
        except CryptoError:
            logger.warning("could not decrypt message %s in room %s", message.id, message.room_id)
            message.decrypted_content = DECRYPTION_PLACEHOLDER
            message.decryption_failed = True

    async def _install_key(self, room_id: str, key: str | None) -> None:
        if not key or self._keys.get(room_id) == key:
            return
        self._keys[room_id] = key
        if not self._messages.get(room_id):
            return
        async with self._lock(room_id):
            for m in self._messages.get(room_id, ()):
                await self._decrypt_into(m)
        await self.events.emit(MessagesChanged(room_id=room_id))

    def _upsert_room(self, room: Room) -> None:
        for i, r in enumerate(self._rooms):
            if r.id == room.id:
                self._rooms[i] = room
                return
        self._rooms.append(room)

    def _find_message(self, message_id: str, room_id: str | None = None) -> Message | None:
        if room_id is not None:
            return self.get_message(room_id, message_id)
        for msgs in self._messages.values():
            for m in msgs:
                if m.id == message_id:
                    return m
        return None

    def _cancel_typing_timers(self, room_id: str | None = None) -> None:
        for key in list(self._typing_timers):
            if room_id is None or key[0] == room_id:
                self._typing_timers.pop(key).cancel()

    async def _evict(self, room_id: str) -> None:
        self._departed.add(room_id)
        self._rooms = [r for r in self._rooms if r.id != room_id]
        self._messages.pop(room_id, None)
        self._members.pop(room_id, None)
        self._keys.pop(room_id, None)
        self._has_more.pop(room_id, None)
        self._typing.pop(room_id, None)
        self._cancel_typing_timers(room_id)
        self._unread.pop(room_id, None)
        was_current = self.current_room_id == room_id
        if was_current:
            self._current = None

        await self.events.emit(RoomsChanged())
        await self.events.emit(MessagesChanged(room_id=room_id))
        await self.events.emit(MembersChanged(room_id=room_id))
        if was_current:
            await self.events.emit(CurrentRoomChanged(room_id=None))

    # Rooms

    async def load_rooms(self) -> None:
        """Replace the room list. Per-room caches of unlisted rooms are left alone."""

        await self._set_error(None)
        async with self._busy():
            try:
                rooms = await self.api.get_rooms()
            except OnionChatError as e:
                await self._fail(e, "failed to load rooms")
                return
            for room in rooms:
                if room.id not in self._departed:
                    await self._install_key(room.id, room.encryption_key)
            self._rooms = list(rooms)
            if self._current is not None:
                for room in rooms:
                    if room.id == self._current.id:
                        self._current = room
            await self.events.emit(RoomsChanged())

    async def select_room(self, room_id: str) -> None:
        """Make `room_id` current and re-sync it. Safe to repeat."""

        await self._set_error(None)
        async with self._busy():
            try:
                room = await self.api.get_room(room_id)
            except OnionChatError as e:
                await self._fail(e, "failed to select room")
                return

            self._departed.discard(room.id)
            await self._install_key(room.id, room.encryption_key)
            self._upsert_room(room)
            changed = self.current_room_id != room.id
            self._current = room
            await self.events.emit(RoomsChanged())
            if changed:
                await self.events.emit(CurrentRoomChanged(room_id=room.id))

            await self.channel.join_room(room.id)
            await self.load_messages(room.id)
            await self.load_members(room.id)
            await self.mark_room_read(room.id)

    async def create_room(
        self,
        name: str,
        *,
        description: str | None = None,
        visibility: RoomVisibility = "public",
        max_members: int | None = None,
    ) -> Room:
        await self._set_error(None)
        async with self._busy():
            try:
                room = await self.api.create_room(
                    name, description=description, visibility=visibility, max_members=max_members
                )
            except OnionChatError as e:
                await self._fail(e, "failed to create room")
                raise
            self._departed.discard(room.id)
            await self._install_key(room.id, room.encryption_key)
            self._upsert_room(room)
            logger.info("created room %s", room.id)
            await self.events.emit(RoomsChanged())
            return room

    async def join_room(self, room_id: str) -> Room:
        await self._set_error(None)
        async with self._busy():
            try:
                room = await self.api.join_room(room_id)
            except OnionChatError as e:
                await self._fail(e, "failed to join room")
                raise
            self._departed.discard(room.id)
            await self._install_key(room.id, room.encryption_key)
            self._upsert_room(room)
            if self.current_room_id == room.id:
                self._current = room
            logger.info("joined room %s", room.id)
            await self.events.emit(RoomsChanged())
            return room

    async def leave_room(self, room_id: str) -> None:
        await self._set_error(None)
        try:
            await self.api.leave_room(room_id)
        except OnionChatError as e:
            await self._fail(e, "failed to leave room")
            return
        await self.channel.leave_room(room_id)
        logger.info("left room %s", room_id)
        await self._evict(room_id)

    async def delete_room(self, room_id: str) -> None:
        await self._set_error(None)
        try:
            await self.api.delete_room(room_id)
        except OnionChatError as e:
            await self._fail(e, "failed to delete room")
            raise
        await self.channel.leave_room(room_id)
        logger.info("deleted room %s", room_id)
        await self._evict(room_id)

    # Members

    async def load_members(self, room_id: str) -> None:
        async with self._busy():
            try:
                members = await self.api.get_room_members(room_id)
            except OnionChatError as e:
                await self._fail(e, "failed to load members")
                return
            if room_id in self._departed:
                return
            self._members[room_id] = list(members)
            await self.events.emit(MembersChanged(room_id=room_id))

    async def add_member(self, room_id: str, user_id: str) -> None:
        try:
            await self.api.add_member(room_id, user_id)
        except OnionChatError as e:
            await self._fail(e, "failed to add member")
            raise
        await self.load_members(room_id)

    async def remove_member(self, room_id: str, user_id: str) -> None:
        try:
            await self.api.remove_member(room_id, user_id)
        except OnionChatError as e:
            await self._fail(e, "failed to remove member")
            raise
        await self.load_members(room_id)

    # Messages

    async def load_messages(self, room_id: str) -> None:
        """
        Replace the room's history with the newest page.

        Messages that arrived live while the page was in flight (newer than the
        newest message of the page) are kept after it.
        """

        generation = self._generation
        async with self._busy():
            try:
                page = await self.api.get_room_messages(room_id, limit=self.page_size, offset=0)
            except OnionChatError as e:
                await self._fail(e, "failed to load messages")
                return

            async with self._lock(room_id):
                # Newest first on the wire.
                fresh = [dataclasses.replace(m) for m in reversed(page)]
                for m in fresh:
                    await self._decrypt_into(m)
                if room_id in self._departed or generation != self._generation:
                    return

                page_ids = {m.id for m in fresh}
                newest = fresh[-1].created_at if fresh else None
                live = [
                    m
                    for m in self._messages.get(room_id, ())
                    if m.id not in page_ids
                    and (newest is None or m.created_at is None or m.created_at > newest)
                ]
                self._messages[room_id] = fresh + live
                self._has_more[room_id] = len(page) >= self.page_size
            await self.events.emit(MessagesChanged(room_id=room_id))

    async def load_more_messages(self, room_id: str) -> None:
        """Prepend the next older page."""

        if not self._messages.get(room_id):
            await self.load_messages(room_id)
            return
        if not self.has_more(room_id):
            return

        generation = self._generation
        async with self._busy():
            offset = len(self._messages.get(room_id, ()))
            try:
                page = await self.api.get_room_messages(
                    room_id, limit=self.page_size, offset=offset
                )
            except OnionChatError as e:
                await self._fail(e, "failed to load messages")
                return

            async with self._lock(room_id):
                cached = self._messages.get(room_id, [])
                known = {m.id for m in cached}
                older = [dataclasses.replace(m) for m in reversed(page) if m.id not in known]
                for m in older:
                    await self._decrypt_into(m)
                if room_id in self._departed or generation != self._generation:
                    return
                self._messages[room_id] = older + self._messages.get(room_id, [])
                self._has_more[room_id] = len(page) >= self.page_size
            await self.events.emit(MessagesChanged(room_id=room_id))

    async def add_message(self, message: Message) -> bool:
        """
        Apply a live message. Returns False when it was already present (or the
        room has been left), in which case nothing changes.
        """

        room_id = message.room_id
        if room_id in self._departed:
            logger.debug("ignoring message %s for departed room %s", message.id, room_id)
            return False

        generation = self._generation
        async with self._lock(room_id):
            if self.get_message(room_id, message.id) is not None:
                return False
            msg = dataclasses.replace(message)
            await self._decrypt_into(msg)
            if room_id in self._departed or generation != self._generation:
                return False
            self._messages.setdefault(room_id, []).append(msg)

        if msg.sender_id is not None:
            self._clear_typing(room_id, msg.sender_id)
        await self.events.emit(MessagesChanged(room_id=room_id))

        if room_id != self.current_room_id:
            count = self._unread.get(room_id, 0) + 1
            self._unread[room_id] = count
            await self.events.emit(UnreadChanged(room_id=room_id, count=count))
        return True

    def _require_key(self, room_id: str) -> str:
        key = self._keys.get(room_id)
        if key is None or room_id in self._departed:
            raise MissingRoomKeyError(room_id)
        return key

    async def _encrypt_for(self, room_id: str, text: str) -> str:
        try:
            key = self._require_key(room_id)
            return await self.crypto.encrypt(text, key)
        except (MissingRoomKeyError, CryptoError) as e:
            await self._set_error(str(e))
            raise

    async def send_message(
        self, room_id: str, text: str, attachments: list[str] | None = None
    ) -> None:
        """
        Encrypt and send. There is no local echo: the message shows up when the
        server delivers it back through the push channel.
        """

        wire = await self._encrypt_for(room_id, text)
        kind = message_kind_for(attachments)
        await self.channel.send_message(room_id, wire, kind, attachments)

    async def edit_message(self, room_id: str, message_id: str, text: str) -> None:
        wire = await self._encrypt_for(room_id, text)
        await self.channel.edit_message(message_id, wire)

    async def delete_message(self, message_id: str) -> None:
        await self.channel.delete_message(message_id)

    async def add_reaction(self, message_id: str, emoji: str) -> None:
        await self.channel.add_reaction(message_id, emoji)

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        await self.channel.remove_reaction(message_id, emoji)

    async def send_typing(self, room_id: str, is_typing: bool) -> None:
        await self.channel.send_typing(room_id, is_typing)

    async def mark_room_read(self, room_id: str) -> None:
        if self._unread.pop(room_id, 0):
            await self.events.emit(UnreadChanged(room_id=room_id, count=0))
        msgs = self._messages.get(room_id)
        if msgs:
            await self.channel.mark_read(room_id, msgs[-1].id)

    # Push handlers

    async def _on_message(self, ev: MessageReceived) -> None:
        await self.add_message(ev.message)

    async def _on_message_edited(self, ev: MessageEdited) -> None:
        msg = self._find_message(ev.message_id, ev.room_id)
        if msg is None:
            return
        room_id = msg.room_id
        async with self._lock(room_id):
            msg = self.get_message(room_id, ev.message_id)
            if msg is None:
                return
            msg.encrypted_content = ev.encrypted_content
            if ev.updated_at is not None:
                msg.updated_at = ev.updated_at
            await self._decrypt_into(msg)
        await self.events.emit(MessagesChanged(room_id=room_id))

    async def _on_message_deleted(self, ev: MessageDeleted) -> None:
        msg = self._find_message(ev.message_id, ev.room_id)
        if msg is None:
            return
        room_id = msg.room_id
        async with self._lock(room_id):
            msgs = self._messages.get(room_id, [])
            self._messages[room_id] = [m for m in msgs if m.id != ev.message_id]
        await self.events.emit(MessagesChanged(room_id=room_id))

    async def _apply_reaction(
        self,
        message_id: str,
        user_id: str,
        emoji: str,
        reactions: dict[str, list[str]] | None,
        *,
        added: bool,
    ) -> None:
        msg = self._find_message(message_id)
        if msg is None:
            return
        if reactions is not None:
            msg.reactions = {k: list(v) for k, v in reactions.items()}
        else:
            users = msg.reactions.get(emoji, [])
            if added and user_id not in users:
                msg.reactions[emoji] = [*users, user_id]
            elif not added and user_id in users:
                remaining = [u for u in users if u != user_id]
                if remaining:
                    msg.reactions[emoji] = remaining
                else:
                    msg.reactions.pop(emoji, None)
        await self.events.emit(MessagesChanged(room_id=msg.room_id))

    async def _on_reaction_added(self, ev: ReactionAdded) -> None:
        await self._apply_reaction(ev.message_id, ev.user_id, ev.emoji, ev.reactions, added=True)

    async def _on_reaction_removed(self, ev: ReactionRemoved) -> None:
        await self._apply_reaction(ev.message_id, ev.user_id, ev.emoji, ev.reactions, added=False)

    async def _on_member_joined(self, ev: MemberJoined) -> None:
        members = self._members.get(ev.room_id)
        if ev.room_id in self._departed or members is None:
            return
        if any(m.user_id == ev.user_id for m in members):
            return
        user = User(id=ev.user_id, username=ev.username) if ev.username else None
        members.append(RoomMember(room_id=ev.room_id, user_id=ev.user_id, user=user))
        await self.events.emit(MembersChanged(room_id=ev.room_id))

    async def _on_member_left(self, ev: MemberLeft) -> None:
        self._clear_typing(ev.room_id, ev.user_id)
        members = self._members.get(ev.room_id)
        if not members:
            return
        remaining = [m for m in members if m.user_id != ev.user_id]
        if len(remaining) == len(members):
            return
        self._members[ev.room_id] = remaining
        await self.events.emit(MembersChanged(room_id=ev.room_id))

    async def _on_presence(self, ev: PresenceChanged) -> None:
        if ev.is_online:
            self._online.add(ev.user_id)
        else:
            self._online.discard(ev.user_id)
        for members in self._members.values():
            for m in members:
                if m.user is not None and m.user.id == ev.user_id:
                    m.user.is_online = ev.is_online
        await self.events.emit(PresenceUpdated(user_id=ev.user_id, is_online=ev.is_online))

    def _clear_typing(self, room_id: str, user_id: str) -> bool:
        timer = self._typing_timers.pop((room_id, user_id), None)
        if timer is not None:
            timer.cancel()
        users = self._typing.get(room_id)
        return bool(users) and users.pop(user_id, None) is not None

    async def _expire_typing(self, room_id: str, user_id: str) -> None:
        await asyncio.sleep(self.typing_timeout_s)
        self._typing_timers.pop((room_id, user_id), None)
        users = self._typing.get(room_id)
        if users and users.pop(user_id, None) is not None:
            await self.events.emit(TypingUsersChanged(room_id=room_id))

    async def _on_typing(self, ev: TypingChanged) -> None:
        if ev.room_id in self._departed:
            return
        changed = self._clear_typing(ev.room_id, ev.user_id)
        if ev.is_typing:
            loop = asyncio.get_running_loop()
            self._typing.setdefault(ev.room_id, {})[ev.user_id] = TypingUser(
                room_id=ev.room_id, user_id=ev.user_id, username=ev.username, since=loop.time()
            )
            self._typing_timers[(ev.room_id, ev.user_id)] = ensure_task(
                self._expire_typing(ev.room_id, ev.user_id), name="pyonionchat.typing_expiry"
            )
            changed = True
        if changed:
            await self.events.emit(TypingUsersChanged(room_id=ev.room_id))

    async def _on_channel_error(self, ev: ChannelError) -> None:
        await self._set_error(ev.message)

    async def _on_connection_up(self, ev: ConnectionUp) -> None:
        room_id = self.current_room_id
        if not ev.reconnected or room_id is None:
            return
        # Catch up on anything missed while the channel was down.
        await self.channel.join_room(room_id)
        await self.load_messages(room_id)
