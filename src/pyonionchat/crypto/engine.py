from __future__ import annotations

import asyncio
import logging

import nacl.bindings
import nacl.exceptions
import nacl.utils
from nacl.secret import SecretBox

from ..constants import MAC_BYTES, NONCE_BYTES, ROOM_KEY_BYTES
from ..exceptions import CryptoError, DecryptionError, EncryptionError
from ..util.bytes import b64decode, b64encode

logger = logging.getLogger(__name__)


def generate_room_key() -> str:
    """Fresh random base64 room key of the length the cipher requires."""

    return b64encode(nacl.utils.random(ROOM_KEY_BYTES))


def _sodium_init() -> None:
    try:
        nacl.bindings.sodium_init()
    except nacl.exceptions.RuntimeError as e:
        raise CryptoError("libsodium failed to initialize") from e


class CryptoEngine:
    """
    Room-key authenticated encryption (libsodium secretbox, XSalsa20-Poly1305).

    Wire form is `base64(nonce || ciphertext)` with a fresh random 192-bit nonce per
    call; the ciphertext carries the 16-byte Poly1305 MAC. Output uses the URL-safe
    unpadded alphabet, input is accepted in either alphabet with or without padding.
    The engine holds no keys or plaintext between calls.

    Initialization loads libsodium in a worker thread. It happens once;
    `encrypt`/`decrypt` await it lazily, and concurrent callers share the same
    in-flight initialization.
    """

    def __init__(self) -> None:
        self._ready = False
        self._init_task: asyncio.Task[None] | None = None

    @property
    def ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        if self._ready:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            # Let a later call retry instead of caching the failure.
            if self._init_task is task:
                self._init_task = None
            raise

    async def _initialize(self) -> None:
        await asyncio.to_thread(_sodium_init)
        self._ready = True
        logger.debug("crypto engine ready")

    async def encrypt(self, plaintext: str, key: str) -> str:
        await self.initialize()
        try:
            key_bytes = b64decode(key)
        except ValueError as e:
            raise EncryptionError("room key is not valid base64") from e
        if len(key_bytes) != ROOM_KEY_BYTES:
            raise EncryptionError(f"room key must be {ROOM_KEY_BYTES} bytes")

        nonce = nacl.utils.random(NONCE_BYTES)
        # EncryptedMessage is already nonce || ciphertext.
        sealed = SecretBox(key_bytes).encrypt(plaintext.encode("utf-8"), nonce)
        return b64encode(bytes(sealed))

    async def decrypt(self, wire: str, key: str) -> str:
        await self.initialize()
        # One error type for every failure: no oracle between tampering and a wrong key.
        try:
            combined = b64decode(wire)
            key_bytes = b64decode(key)
        except ValueError as e:
            raise DecryptionError("decryption failed") from e
        if len(combined) < NONCE_BYTES + MAC_BYTES or len(key_bytes) != ROOM_KEY_BYTES:
            raise DecryptionError("decryption failed")

        nonce, ct = combined[:NONCE_BYTES], combined[NONCE_BYTES:]
        try:
            plaintext = SecretBox(key_bytes).decrypt(ct, nonce)
            return plaintext.decode("utf-8")
        except (nacl.exceptions.CryptoError, ValueError) as e:
            raise DecryptionError("decryption failed") from e
