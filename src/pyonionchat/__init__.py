"""
pyonionchat: an asyncio-first client engine for end-to-end encrypted group chat.

It keeps rooms, members and messages in a local cache, synchronizes them over a
REST API and a Socket.IO push channel, and encrypts every message body with a
per-room AES-256-GCM key.
"""

from __future__ import annotations

from .cache import ChatCache
from .client import ChatContext, ClientConfig
from .crypto.engine import CryptoEngine
from .exceptions import OnionChatError
from .socket_config import SocketConfig
from .sync import SyncChannel

__all__ = [
    "ChatCache",
    "ChatContext",
    "ClientConfig",
    "CryptoEngine",
    "OnionChatError",
    "SocketConfig",
    "SyncChannel",
]

__version__ = "0.1.0"
