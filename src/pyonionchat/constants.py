from __future__ import annotations

DEFAULT_API_URL = "http://localhost:3000/api"
DEFAULT_SOCKET_URL = "http://localhost:3000"
# XSalsa20-Poly1305 secretbox: 32-byte key, 192-bit nonce, 128-bit MAC.
ROOM_KEY_BYTES = 32
NONCE_BYTES = 24
MAC_BYTES = 16

# Shown in place of message bodies that cannot be decrypted.
DECRYPTION_PLACEHOLDER = "[Encrypted]"

DEFAULT_PAGE_SIZE = 50
DEFAULT_TYPING_TIMEOUT_S = 5.0

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp")
VIDEO_EXTENSIONS = ("mp4", "webm", "ogg")
