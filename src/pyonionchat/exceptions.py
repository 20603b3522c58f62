from __future__ import annotations


class OnionChatError(Exception):
    """Base error for the pyonionchat library."""


class ProtocolError(OnionChatError):
    """Malformed push event payload or API response body."""


class ApiError(OnionChatError):
    """
    The pull boundary returned a failure.

    `message` is the server's human-readable `error` field when present, otherwise
    a description of the transport failure. It is meant to be shown to users as-is.
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class AuthError(OnionChatError):
    """Session establishment / restore failure."""


class CryptoError(OnionChatError):
    """Base class for room-key encryption failures."""


class EncryptionError(CryptoError):
    """Encryption failed (bad key material)."""


class DecryptionError(CryptoError):
    """
    Decryption failed.

    Raised for malformed wire forms, wrong key lengths and authentication failures
    alike; callers cannot tell a tampered ciphertext from a wrong key.
    """


class MissingRoomKeyError(OnionChatError):
    """No encryption key is registered for the room."""

    def __init__(self, room_id: str) -> None:
        super().__init__(f"room encryption key not found (room={room_id})")
        self.room_id = room_id
