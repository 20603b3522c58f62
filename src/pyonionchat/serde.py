from __future__ import annotations

import datetime as dt
from typing import Any

from .exceptions import ProtocolError
from .models import Message, Room, RoomMember, Session, User

_KINDS = ("text", "image", "video", "file", "system")


def _expect_str(d: dict[str, Any], *keys: str, field: str) -> str:
    for k in keys:
        v = d.get(k)
        if isinstance(v, (str, int)) and not isinstance(v, bool) and str(v):
            return str(v)
    raise ProtocolError(f"missing {field} (expected one of {', '.join(keys)})")


def _opt_str(v: Any) -> str | None:
    if v is None:
        return None
    return str(v)


def _require(v: str | None, field: str) -> str:
    if not v:
        raise ProtocolError(f"missing {field}")
    return v


def _opt_int(v: Any, field: str) -> int | None:
    if v is None:
        return None
    if isinstance(v, bool):
        raise ProtocolError(f"{field} is not an integer")
    try:
        return int(v)
    except (TypeError, ValueError, OverflowError) as e:
        raise ProtocolError(f"{field} is not an integer: {v!r}") from e


def parse_timestamp(v: Any) -> dt.datetime | None:
    """Accepts ISO-8601 strings (with `Z` suffix) and epoch seconds/milliseconds."""

    if v is None or v == "":
        return None
    if isinstance(v, dt.datetime):
        return v
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        try:
            seconds = v / 1000.0 if v > 10_000_000_000 else float(v)
            return dt.datetime.fromtimestamp(seconds, tz=dt.UTC)
        except (OverflowError, OSError, ValueError):
            # NaN, infinities and years outside the platform range.
            return None
    if isinstance(v, str):
        s = v.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            ts = dt.datetime.fromisoformat(s)
        except ValueError:
            return None
        return ts if ts.tzinfo else ts.replace(tzinfo=dt.UTC)
    return None


def user_from_dict(d: dict[str, Any]) -> User:
    return User(
        id=_expect_str(d, "id", "userId", field="User.id"),
        username=_opt_str(d.get("username")),
        display_name=_opt_str(d.get("displayName")),
        email=_opt_str(d.get("email")),
        avatar=_opt_str(d.get("avatar")),
        is_online=bool(d.get("isOnline", False)),
        last_seen=parse_timestamp(d.get("lastSeen")),
    )


def room_from_dict(d: dict[str, Any]) -> Room:
    visibility = d.get("type") or d.get("visibility") or "public"
    if visibility not in ("public", "private"):
        visibility = "public"
    return Room(
        id=_expect_str(d, "id", field="Room.id"),
        name=str(d.get("name") or ""),
        description=_opt_str(d.get("description")),
        visibility=visibility,
        max_members=_opt_int(d.get("maxMembers"), "Room.maxMembers"),
        encryption_key=d.get("encryptionKey") or None,
        creator_id=_opt_str(d.get("creatorId")),
        avatar=_opt_str(d.get("avatar")),
        created_at=parse_timestamp(d.get("createdAt")),
        updated_at=parse_timestamp(d.get("updatedAt")),
    )


def reactions_from_value(v: Any) -> dict[str, list[str]]:
    if not isinstance(v, dict):
        return {}
    out: dict[str, list[str]] = {}
    for emoji, users in v.items():
        if isinstance(users, list):
            ids = [str(u) for u in users if u is not None]
            if ids:
                out[str(emoji)] = ids
    return out


def _attachments_from(d: dict[str, Any]) -> list[str]:
    raw = d.get("attachments")
    if raw is None and isinstance(d.get("metadata"), dict):
        raw = d["metadata"].get("attachments")
    if not isinstance(raw, list):
        return []
    return [str(a) for a in raw if a]


def message_from_dict(d: dict[str, Any], *, room_id: str | None = None) -> Message:
    sender_raw = d.get("sender")
    sender = user_from_dict(sender_raw) if isinstance(sender_raw, dict) else None
    sender_id = _opt_str(d.get("senderId") or d.get("userId")) or (sender.id if sender else None)

    kind = d.get("messageType") or "text"
    if kind not in _KINDS:
        kind = "file"

    return Message(
        id=_expect_str(d, "id", "messageId", field="Message.id"),
        room_id=_opt_str(d.get("roomId")) or _require(room_id, "Message.roomId"),
        sender_id=sender_id,
        encrypted_content=_expect_str(d, "encryptedContent", "content", field="Message.content"),
        kind=kind,
        attachments=_attachments_from(d),
        reactions=reactions_from_value(d.get("reactions")),
        sender=sender,
        created_at=parse_timestamp(d.get("createdAt")),
        updated_at=parse_timestamp(d.get("updatedAt")),
    )


def member_from_dict(d: dict[str, Any], *, room_id: str | None = None) -> RoomMember:
    user_raw = d.get("user")
    user = user_from_dict(user_raw) if isinstance(user_raw, dict) else None
    user_id = _opt_str(d.get("userId")) or (user.id if user else None)
    if not user_id:
        raise ProtocolError("missing RoomMember.userId")
    rid = _opt_str(d.get("roomId")) or room_id
    if not rid:
        raise ProtocolError("missing RoomMember.roomId")
    return RoomMember(
        room_id=rid,
        user_id=user_id,
        role=str(d.get("role") or "member"),
        user=user,
        joined_at=parse_timestamp(d.get("joinedAt")),
    )


def session_from_dict(d: dict[str, Any]) -> Session:
    token = d.get("token")
    user_raw = d.get("user")
    if not isinstance(token, str) or not token:
        raise ProtocolError("auth response missing token")
    if not isinstance(user_raw, dict):
        raise ProtocolError("auth response missing user")
    return Session(token=token, user=user_from_dict(user_raw))
