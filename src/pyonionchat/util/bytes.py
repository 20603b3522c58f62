from __future__ import annotations

import base64
import binascii


def b64encode(data: bytes) -> str:
    """URL-safe base64 without padding (libsodium's default `to_base64` variant)."""

    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64decode(data: str) -> bytes:
    """
    Decode base64 in either alphabet (standard or URL-safe), padded or not.

    Raises `ValueError` for non-ASCII input or characters outside the alphabet, so
    callers can map every malformed input to one error type.
    """

    try:
        raw = data.strip().encode("ascii")
    except UnicodeEncodeError as e:
        raise ValueError(f"invalid base64: {e}") from e
    raw = raw.replace(b"-", b"+").replace(b"_", b"/")
    raw += b"=" * (-len(raw) % 4)
    try:
        return base64.b64decode(raw, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64: {e}") from e
