"""
Typed inbound notifications of the Sync Channel.

Every push frame is decoded exactly once, at the channel boundary, into one of the
variants below. Subscribers register per variant class:

    channel.events.subscribe(MessageReceived, on_message)
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .exceptions import ProtocolError
from .models import Message
from .serde import message_from_dict, parse_timestamp, reactions_from_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionUp:
    reconnected: bool = False


@dataclass(frozen=True, slots=True)
class ConnectionDown:
    reason: str
    will_reconnect: bool = False


@dataclass(frozen=True, slots=True)
class MessageReceived:
    message: Message


@dataclass(frozen=True, slots=True)
class MemberJoined:
    room_id: str
    user_id: str
    username: str | None = None


@dataclass(frozen=True, slots=True)
class MemberLeft:
    room_id: str
    user_id: str
    username: str | None = None


@dataclass(frozen=True, slots=True)
class PresenceChanged:
    user_id: str
    is_online: bool


@dataclass(frozen=True, slots=True)
class TypingChanged:
    room_id: str
    user_id: str
    is_typing: bool
    username: str | None = None


@dataclass(frozen=True, slots=True)
class ReactionAdded:
    message_id: str
    user_id: str
    emoji: str
    # Full emoji -> user ids map after the change, when the server sends it.
    reactions: dict[str, list[str]] | None = None


@dataclass(frozen=True, slots=True)
class ReactionRemoved:
    message_id: str
    user_id: str
    emoji: str
    reactions: dict[str, list[str]] | None = None


@dataclass(frozen=True, slots=True)
class MessageEdited:
    message_id: str
    encrypted_content: str
    room_id: str | None = None
    updated_at: dt.datetime | None = None


@dataclass(frozen=True, slots=True)
class MessageDeleted:
    message_id: str
    room_id: str | None = None


@dataclass(frozen=True, slots=True)
class ChannelError:
    message: str
    code: str | None = None
    details: str | None = None


InboundEvent = (
    ConnectionUp
    | ConnectionDown
    | MessageReceived
    | MemberJoined
    | MemberLeft
    | PresenceChanged
    | TypingChanged
    | ReactionAdded
    | ReactionRemoved
    | MessageEdited
    | MessageDeleted
    | ChannelError
)


def _req(d: dict[str, Any], *keys: str) -> str:
    for k in keys:
        v = d.get(k)
        if v is not None and v != "":
            return str(v)
    raise ProtocolError(f"event payload missing {'/'.join(keys)}")


def _opt(d: dict[str, Any], key: str) -> str | None:
    v = d.get(key)
    return str(v) if v is not None else None


def _message(d: dict[str, Any]) -> MessageReceived:
    return MessageReceived(message=message_from_dict(d))


def _member_joined(d: dict[str, Any]) -> MemberJoined:
    return MemberJoined(
        room_id=_req(d, "roomId"), user_id=_req(d, "userId"), username=_opt(d, "username")
    )


def _member_left(d: dict[str, Any]) -> MemberLeft:
    return MemberLeft(
        room_id=_req(d, "roomId"), user_id=_req(d, "userId"), username=_opt(d, "username")
    )


def _presence(online: bool | None) -> Callable[[dict[str, Any]], PresenceChanged]:
    def decode(d: dict[str, Any]) -> PresenceChanged:
        is_online = bool(d.get("isOnline", False)) if online is None else online
        return PresenceChanged(user_id=_req(d, "userId"), is_online=is_online)

    return decode


def _typing(d: dict[str, Any]) -> TypingChanged:
    raw = d.get("isTyping", d.get("typing", True))
    return TypingChanged(
        room_id=_req(d, "roomId"),
        user_id=_req(d, "userId"),
        is_typing=bool(raw),
        username=_opt(d, "username"),
    )


def _reaction_added(d: dict[str, Any]) -> ReactionAdded:
    return ReactionAdded(
        message_id=_req(d, "messageId"),
        user_id=_req(d, "userId"),
        emoji=_req(d, "emoji"),
        reactions=reactions_from_value(d["reactions"]) if "reactions" in d else None,
    )


def _reaction_removed(d: dict[str, Any]) -> ReactionRemoved:
    return ReactionRemoved(
        message_id=_req(d, "messageId"),
        user_id=_req(d, "userId"),
        emoji=_req(d, "emoji"),
        reactions=reactions_from_value(d["reactions"]) if "reactions" in d else None,
    )


def _edited(d: dict[str, Any]) -> MessageEdited:
    return MessageEdited(
        message_id=_req(d, "messageId", "id"),
        encrypted_content=_req(d, "encryptedContent", "content"),
        room_id=_opt(d, "roomId"),
        updated_at=parse_timestamp(d.get("updatedAt")),
    )


def _deleted(d: dict[str, Any]) -> MessageDeleted:
    return MessageDeleted(message_id=_req(d, "messageId", "id"), room_id=_opt(d, "roomId"))


def _error(d: dict[str, Any]) -> ChannelError:
    return ChannelError(
        message=str(d.get("message") or d.get("error") or "push channel error"),
        code=_opt(d, "code"),
        details=_opt(d, "details"),
    )


# Push event names across client generations map onto one variant each.
_DECODERS: dict[str, Callable[[dict[str, Any]], InboundEvent]] = {
    "message": _message,
    "new_message": _message,
    "user_joined": _member_joined,
    "member_joined": _member_joined,
    "user_left": _member_left,
    "member_left": _member_left,
    "member_removed": _member_left,
    "user_status": _presence(None),
    "user_online": _presence(True),
    "user_offline": _presence(False),
    "user_typing": _typing,
    "reaction_added": _reaction_added,
    "reactionAdded": _reaction_added,
    "reaction_removed": _reaction_removed,
    "reactionRemoved": _reaction_removed,
    "message_edited": _edited,
    "message_deleted": _deleted,
    "error": _error,
}


def decode_event(name: str, data: Any) -> InboundEvent | None:
    """
    Decode a named push event into its typed variant.

    Returns `None` for event names this client does not handle. Raises
    `ProtocolError` when a known event carries a malformed payload.
    """

    decoder = _DECODERS.get(name)
    if decoder is None:
        logger.debug("ignoring unknown push event %r", name)
        return None
    if name == "error" and isinstance(data, str):
        return ChannelError(message=data)
    if not isinstance(data, dict):
        raise ProtocolError(f"push event {name!r} payload is not an object")
    return decoder(data)
