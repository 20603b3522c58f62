from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass, field
from typing import Literal

from .constants import IMAGE_EXTENSIONS, VIDEO_EXTENSIONS

RoomVisibility = Literal["public", "private"]
MessageKind = Literal["text", "image", "video", "file", "system"]
MemberRole = Literal["admin", "moderator", "member"]

_IMAGE_RE = re.compile(r"\.(" + "|".join(IMAGE_EXTENSIONS) + r")$", re.IGNORECASE)
_VIDEO_RE = re.compile(r"\.(" + "|".join(VIDEO_EXTENSIONS) + r")$", re.IGNORECASE)


@dataclass(slots=True)
class User:
    id: str
    username: str | None = None
    display_name: str | None = None
    email: str | None = None
    avatar: str | None = None
    is_online: bool = False
    last_seen: dt.datetime | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.username or self.id


@dataclass(slots=True)
class Room:
    """
    Room descriptor as seen by the current session.

    `encryption_key` is the base64 room key and is only present while the session is
    an authorized member. It is kept out of `repr()` so rooms can be logged safely.
    """

    id: str
    name: str
    description: str | None = None
    visibility: RoomVisibility = "public"
    max_members: int | None = None
    encryption_key: str | None = field(default=None, repr=False)
    creator_id: str | None = None
    avatar: str | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


@dataclass(slots=True)
class Message:
    """
    A room message.

    `encrypted_content` is the wire form (`base64(nonce || ciphertext)`).
    `decrypted_content` is derived locally, never sent anywhere, and recomputed
    whenever the wire form or the room key changes.
    """

    id: str
    room_id: str
    sender_id: str | None
    encrypted_content: str
    kind: MessageKind = "text"
    attachments: list[str] = field(default_factory=list)
    reactions: dict[str, list[str]] = field(default_factory=dict)
    sender: User | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None
    decrypted_content: str | None = None
    decryption_failed: bool = False


@dataclass(slots=True)
class RoomMember:
    room_id: str
    user_id: str
    role: MemberRole | str = "member"
    user: User | None = None
    joined_at: dt.datetime | None = None


@dataclass(slots=True)
class TypingUser:
    room_id: str
    user_id: str
    username: str | None
    since: float  # event-loop time


@dataclass(slots=True)
class Session:
    token: str = field(repr=False)
    user: User


def message_kind_for(attachments: list[str] | None) -> MessageKind:
    """
    Derive the outbound message kind from attachment names.

    The first attachment decides; matching is by extension, case-insensitive.
    """

    if not attachments:
        return "text"
    first = attachments[0]
    if _IMAGE_RE.search(first):
        return "image"
    if _VIDEO_RE.search(first):
        return "video"
    return "file"
